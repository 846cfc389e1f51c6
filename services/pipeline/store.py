"""Pending-extraction store.

Дедупликация держится на уникальном индексе (user_id, reference_code):
`INSERT … ON CONFLICT DO NOTHING RETURNING id`. Никакого
check-then-insert – два почти одновременных ретрая одного SMS должны
получить одну и ту же запись.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import PendingTransactionRow
from libs.models import Classification, ParsedExtraction, PendingStatus

__all__ = [
    "dialect_insert",
    "ingest_pending",
    "get_pending",
    "get_pending_by_reference",
    "list_unconfirmed",
]

logger = logging.getLogger(__name__)


def dialect_insert(session: AsyncSession, model: Any):
    """`insert()` с поддержкой ON CONFLICT для текущего диалекта."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


async def ingest_pending(
    session: AsyncSession,
    *,
    user_id: str,
    extraction: ParsedExtraction,
    classification: Classification,
    raw_text: str,
    sender_id: str,
    created_at: datetime,
) -> tuple[PendingTransactionRow, bool]:
    """Idempotent insert. Returns ``(row, created)``."""
    if not extraction.is_valid:
        raise ValueError("Invalid extractions must never reach the store")

    values = {
        "user_id": user_id,
        "raw_text": raw_text,
        "sender_id": sender_id,
        "line_id": classification.line_id.value,
        "account_type": classification.account_type.value,
        "line_rule": classification.line_rule,
        "account_rule": classification.account_rule,
        "direction": extraction.direction.value,
        "amount": extraction.amount,
        "counterparty_phone": extraction.counterparty_phone,
        "counterparty_name": extraction.counterparty_name,
        "reference_code": extraction.reference_code,
        "resulting_balance": extraction.resulting_balance,
        "status": PendingStatus.CREATED.value,
        "is_confirmed": False,
        "created_at": created_at,
    }
    stmt = (
        dialect_insert(session, PendingTransactionRow)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["user_id", "reference_code"])
        .returning(PendingTransactionRow.id)
    )
    new_id = (await session.execute(stmt)).scalar_one_or_none()
    await session.commit()

    if new_id is None:
        existing = await get_pending_by_reference(session, user_id, extraction.reference_code)
        if existing is None:  # pragma: no cover – конфликт без строки невозможен
            raise RuntimeError(f"Conflict on {extraction.reference_code} but no row found")
        logger.info("Duplicate reference %s for user %s → pending #%s",
                    extraction.reference_code, user_id, existing.id)
        return existing, False

    row = await session.get(PendingTransactionRow, new_id)
    assert row is not None
    logger.info("Pending #%s created for %s (%s)", row.id, row.reference_code, row.amount)
    return row, True


async def get_pending(session: AsyncSession, user_id: str, pending_id: int) -> PendingTransactionRow | None:
    stmt = (
        select(PendingTransactionRow)
        .where(PendingTransactionRow.id == pending_id, PendingTransactionRow.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def get_pending_by_reference(
    session: AsyncSession, user_id: str, reference_code: str
) -> PendingTransactionRow | None:
    stmt = select(PendingTransactionRow).where(
        PendingTransactionRow.user_id == user_id,
        PendingTransactionRow.reference_code == reference_code,
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_unconfirmed(session: AsyncSession, user_id: str) -> Sequence[PendingTransactionRow]:
    """Все черновики в статусе CREATED, новые первыми. Пагинация – забота API."""
    stmt = (
        select(PendingTransactionRow)
        .where(
            PendingTransactionRow.user_id == user_id,
            PendingTransactionRow.status == PendingStatus.CREATED.value,
        )
        .order_by(PendingTransactionRow.created_at.desc(), PendingTransactionRow.id.desc())
    )
    return (await session.execute(stmt)).scalars().all()
