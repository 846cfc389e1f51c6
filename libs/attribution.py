# libs/attribution.py
"""Heuristic line attribution and business/personal classification.

Обе функции чистые и детерминированные: время приходит снаружи (часы
инжектируются в пайплайн), а вместе с результатом возвращается имя
сработавшего правила – чтобы эвристику было видно и можно было тюнить.

Правила по умолчанию
--------------------
* Линия: метаданные устройства (SIM1/SIM2) важнее всего; иначе рабочие
  часы 09:00–17:59 → LINE_A, остальное → LINE_B. Это *эвристика*, а не
  гарантия.
* Тип счёта: бизнес-слово в имени контрагента или крупная сумма → BUSINESS;
  личное слово в тексте → PERSONAL; иначе рабочие часы 08:00–18:59 →
  BUSINESS.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from libs.config import Settings, get_settings
from libs.models import AccountType, Classification, LineId

Clock = Callable[[], datetime]

BUSINESS_KEYWORDS = (
    "supplier",
    "vendor",
    "wholesale",
    "ltd",
    "limited",
    "company",
    "shop",
    "store",
    "market",
    "traders",
    "distributors",
    "services",
    "hotel",
    "restaurant",
    "supplies",
)
PERSONAL_KEYWORDS = ("personal", "family", "wife", "husband", "child", "grocery", "transport")

_LINE_HINTS = {
    "SIM1": LineId.LINE_A,
    "SIM 1": LineId.LINE_A,
    "1": LineId.LINE_A,
    "LINE_A": LineId.LINE_A,
    "A": LineId.LINE_A,
    "SIM2": LineId.LINE_B,
    "SIM 2": LineId.LINE_B,
    "2": LineId.LINE_B,
    "LINE_B": LineId.LINE_B,
    "B": LineId.LINE_B,
}


def system_clock() -> datetime:
    """Текущее время в поясе настроек (aware), а не в поясе хоста."""
    return datetime.now(ZoneInfo(get_settings().timezone))


def _local_hour(moment: datetime, settings: Settings) -> int:
    if moment.tzinfo is not None:
        moment = moment.astimezone(ZoneInfo(settings.timezone))
    return moment.hour


def _within(hour: int, start: int, end: int) -> bool:
    return start <= hour <= end


def attribute_line(
    line_hint: Optional[str],
    received_at: datetime,
    settings: Settings | None = None,
) -> tuple[LineId, str]:
    """Returns ``(line, rule)``."""
    settings = settings or get_settings()
    if line_hint:
        hinted = _LINE_HINTS.get(line_hint.strip().upper())
        if hinted is not None:
            return hinted, "device_metadata"

    hour = _local_hour(received_at, settings)
    if _within(hour, settings.line_business_start_hour, settings.line_business_end_hour):
        return LineId.LINE_A, "business_hours"
    return LineId.LINE_B, "after_hours"


def classify_account(
    counterparty_name: Optional[str],
    amount: Decimal | None,
    text: str,
    received_at: datetime,
    settings: Settings | None = None,
) -> tuple[AccountType, str]:
    """Returns ``(account_type, rule)``."""
    settings = settings or get_settings()
    name = (counterparty_name or "").lower()
    if any(keyword in name for keyword in BUSINESS_KEYWORDS):
        return AccountType.BUSINESS, "business_keyword"
    if amount is not None and amount > settings.large_amount_threshold:
        return AccountType.BUSINESS, "large_amount"

    body = (text or "").lower()
    if any(keyword in body for keyword in PERSONAL_KEYWORDS):
        return AccountType.PERSONAL, "personal_keyword"

    hour = _local_hour(received_at, settings)
    if _within(hour, settings.account_business_start_hour, settings.account_business_end_hour):
        return AccountType.BUSINESS, "business_hours"
    return AccountType.PERSONAL, "after_hours"


def classify(
    text: str,
    counterparty_name: Optional[str],
    amount: Decimal | None,
    line_hint: Optional[str],
    received_at: datetime,
    settings: Settings | None = None,
) -> Classification:
    """Both heuristics at once, as attached to a pending transaction."""
    line_id, line_rule = attribute_line(line_hint, received_at, settings)
    account_type, account_rule = classify_account(counterparty_name, amount, text, received_at, settings)
    return Classification(
        line_id=line_id,
        account_type=account_type,
        line_rule=line_rule,
        account_rule=account_rule,
    )


__all__ = [
    "Clock",
    "system_clock",
    "attribute_line",
    "classify_account",
    "classify",
]
