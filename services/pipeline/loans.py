"""Loan tracking on top of confirmed transactions.

Заём – это подтверждённая транзакция с ``is_loan=True``. Пока она не
отмечена как возвращённая, она числится в «непогашенных».
"""
from __future__ import annotations

import logging
from typing import Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import TransactionRow
from libs.errors import LoanNotFound
from libs.models import Transaction
from services.pipeline.metrics import LOANS_REPAID

logger = logging.getLogger(__name__)


async def list_outstanding_loans(session: AsyncSession, user_id: str) -> Sequence[TransactionRow]:
    """Непогашенные займы пользователя, свежие первыми."""
    stmt = (
        select(TransactionRow)
        .where(
            TransactionRow.user_id == user_id,
            TransactionRow.is_loan.is_(True),
            TransactionRow.is_repaid.is_(False),
        )
        .order_by(TransactionRow.transaction_date.desc(), TransactionRow.id.desc())
    )
    return (await session.execute(stmt)).scalars().all()


async def mark_loan_repaid(session: AsyncSession, *, user_id: str, transaction_id: int) -> Transaction:
    """Отмечает заём возвращённым. Повторный вызов – no-op."""
    result = await session.execute(
        update(TransactionRow)
        .where(
            TransactionRow.id == transaction_id,
            TransactionRow.user_id == user_id,
            TransactionRow.is_loan.is_(True),
            TransactionRow.is_repaid.is_(False),
        )
        .values(is_repaid=True)
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    stmt = (
        select(TransactionRow)
        .where(
            TransactionRow.id == transaction_id,
            TransactionRow.user_id == user_id,
            TransactionRow.is_loan.is_(True),
        )
        .execution_options(populate_existing=True)
    )
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is None:
        raise LoanNotFound(transaction_id)
    if result.rowcount:
        LOANS_REPAID.inc()
        logger.info("Loan transaction #%s marked repaid by user %s", transaction_id, user_id)
    return Transaction.model_validate(row)


__all__ = ["list_outstanding_loans", "mark_loan_repaid"]
