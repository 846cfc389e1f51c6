# tests/conftest.py
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from db.session import init_models
from libs.config import Settings

SENT_SMS = (
    "QR345678 Confirmed. Ksh2,500.00 sent to JOHN KAMAU 0712345678 "
    "on 27/8/25 at 2:45 PM. New balance is Ksh15,750.50"
)


class FakeClock:
    """Часы для тестов: стоят на месте, пока их не подвинуть."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def tick(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


def make_sms(ref: str, amount: str = "2,500.00", phone: str = "0712345678", name: str = "JOHN KAMAU") -> str:
    """M-Pesa «sent to» уведомление с заданным кодом транзакции."""
    return (
        f"{ref} Confirmed. Ksh{amount} sent to {name} {phone} "
        "on 27/8/25 at 2:45 PM. New M-PESA balance is Ksh15,750.50. Transaction cost, Ksh33.00."
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def clock() -> FakeClock:
    # 10:00 в Найроби – рабочее время для обеих эвристик
    return FakeClock(datetime(2025, 8, 27, 10, 0))


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(sessionmaker):
    async with sessionmaker() as s:
        yield s
