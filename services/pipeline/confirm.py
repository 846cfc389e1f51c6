"""Confirmation workflow: pending transaction → committed Transaction.

Порядок важен:
1. валидация ввода (до любого обращения к БД);
2. условный UPDATE ``CREATED → CONFIRMED`` и INSERT транзакции – один коммит;
3. хуки обогащения (поставщик, товар) – *после* коммита, каждый в своей
   транзакции. Упавший хук откатывается, пишется в лог, уходит в Sentry и
   в метрику, но подтверждённая транзакция остаётся.

Гонку двух подтверждений решают БД: UPDATE с условием по статусу и
уникальный ``transactions.pending_id``. Проигравший получает транзакцию
победителя.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import PendingTransactionRow, TransactionRow
from libs.attribution import Clock, system_clock
from libs.config import Settings, get_settings
from libs.errors import (
    ConfirmationValidationError,
    EnrichmentFailure,
    PendingNotFound,
    PendingStateError,
)
from libs.models import ConfirmRequest, PendingStatus, PendingTransaction, Transaction, TxnDirection
from libs.sentry import sentry_capture
from services.pipeline.memory import remember_item, remember_supplier
from services.pipeline.metrics import CONFIRMED, ENRICHMENT_FAILED, REJECTED
from services.pipeline.store import get_pending

logger = logging.getLogger(__name__)

CURRENCY = "KES"
TRANSACTION_TYPE = "MPESA"
TRANSACTION_STATUS = "COMPLETED"
NOTES_PREVIEW = 100


@dataclass(frozen=True)
class ConfirmContext:
    """Всё, что нужно хукам. Только значения – ORM-объекты после rollback протухают."""

    user_id: str
    pending_id: int
    counterparty_phone: Optional[str]
    amount: Decimal
    item_name: str
    supplier_name: str
    category_id: str
    is_personal: bool
    now: datetime
    transaction: Transaction
    settings: Settings


EnrichmentHook = Callable[[AsyncSession, ConfirmContext], Awaitable[None]]


# ---------------------------------------------------------------------------
# Хуки обогащения
# ---------------------------------------------------------------------------

async def learn_supplier(session: AsyncSession, ctx: ConfirmContext) -> None:
    if not ctx.counterparty_phone:
        logger.debug("Pending #%s has no phone, supplier memory skipped", ctx.pending_id)
        return
    await remember_supplier(
        session,
        user_id=ctx.user_id,
        phone=ctx.counterparty_phone,
        name=ctx.supplier_name,
        item_name=ctx.item_name,
        category_id=ctx.category_id,
        is_personal=ctx.is_personal,
        now=ctx.now,
        limit=ctx.settings.supplier_item_memory,
    )


async def learn_item(session: AsyncSession, ctx: ConfirmContext) -> None:
    await remember_item(
        session,
        user_id=ctx.user_id,
        name=ctx.item_name,
        category_id=ctx.category_id,
        price=ctx.amount,
        is_personal=ctx.is_personal,
        now=ctx.now,
    )


ENRICHMENT_HOOKS: list[tuple[str, EnrichmentHook]] = [
    ("supplier", learn_supplier),
    ("item", learn_item),
]


async def run_enrichment(
    session: AsyncSession,
    ctx: ConfirmContext,
    hooks: Sequence[tuple[str, EnrichmentHook]],
) -> list[EnrichmentFailure]:
    failures: list[EnrichmentFailure] = []
    for name, hook in hooks:
        try:
            await hook(session, ctx)
            await session.commit()
        except Exception as exc:  # noqa: BLE001 – обогащение не должно ронять подтверждение
            await session.rollback()
            failure = EnrichmentFailure(name, exc)
            failures.append(failure)
            ENRICHMENT_FAILED.labels(hook=name).inc()
            logger.warning("%s (transaction #%s)", failure, ctx.transaction.id, exc_info=exc)
            sentry_capture(
                failure,
                extras={
                    "user_id": ctx.user_id,
                    "pending_id": ctx.pending_id,
                    "transaction_id": ctx.transaction.id,
                    "hook": name,
                },
            )
    return failures


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def validate_request(request: ConfirmRequest) -> ConfirmRequest:
    """Обрезает пробелы; пустые обязательные поля → ConfirmationValidationError."""
    cleaned = request.model_copy(
        update={
            "item_name": request.item_name.strip(),
            "supplier_name": request.supplier_name.strip(),
            "category_id": request.category_id.strip(),
            # без флага займа получатель и срок игнорируются
            "loan_recipient": ((request.loan_recipient or "").strip() or None) if request.is_loan else None,
            "expected_repayment_date": request.expected_repayment_date if request.is_loan else None,
        }
    )
    missing = [
        alias
        for alias, value in (
            ("itemName", cleaned.item_name),
            ("supplierName", cleaned.supplier_name),
            ("categoryId", cleaned.category_id),
        )
        if not value
    ]
    if missing:
        raise ConfirmationValidationError(missing)
    return cleaned


def describe_payment(item_name: str, supplier_name: str, counterparty_name: Optional[str]) -> str:
    if item_name:
        return item_name
    return f"Payment to {supplier_name or counterparty_name or 'Unknown'}"


def sms_notes(raw_text: str) -> str:
    return f"Processed from SMS: {raw_text[:NOTES_PREVIEW]}..."


async def _transaction_for(session: AsyncSession, pending_id: int) -> Optional[TransactionRow]:
    stmt = (
        select(TransactionRow)
        .where(TransactionRow.pending_id == pending_id)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def _resolve_lost_race(session: AsyncSession, user_id: str, pending_id: int) -> Transaction:
    """Кто-то успел раньше – отдаём его транзакцию или объясняем, почему нельзя."""
    pending = await get_pending(session, user_id, pending_id)
    if pending is None:
        raise PendingNotFound(pending_id)
    if pending.status == PendingStatus.CONFIRMED.value:
        existing = await _transaction_for(session, pending.id)
        if existing is not None:
            logger.info("Pending #%s confirmed concurrently; returning transaction #%s",
                        pending_id, existing.id)
            return Transaction.model_validate(existing)
    raise PendingStateError(pending_id, pending.status, "confirm")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def confirm_pending(
    session: AsyncSession,
    *,
    user_id: str,
    pending_id: int,
    request: ConfirmRequest,
    clock: Clock = system_clock,
    hooks: Sequence[tuple[str, EnrichmentHook]] | None = None,
    settings: Settings | None = None,
) -> Transaction:
    request = validate_request(request)
    settings = settings or get_settings()

    pending = await get_pending(session, user_id, pending_id)
    if pending is None:
        raise PendingNotFound(pending_id)
    if pending.status == PendingStatus.CONFIRMED.value:
        existing = await _transaction_for(session, pending.id)
        if existing is not None:
            logger.info("Pending #%s already confirmed → transaction #%s", pending_id, existing.id)
            return Transaction.model_validate(existing)
        raise PendingStateError(pending_id, pending.status, "confirm")
    if pending.status == PendingStatus.REJECTED.value:
        raise PendingStateError(pending_id, pending.status, "confirm")

    now = clock()
    # значения до UPDATE: дальше сессия может их протушить
    counterparty_phone = pending.counterparty_phone
    counterparty_name = pending.counterparty_name
    amount = pending.amount

    result = await session.execute(
        update(PendingTransactionRow)
        .where(
            PendingTransactionRow.id == pending_id,
            PendingTransactionRow.user_id == user_id,
            PendingTransactionRow.status == PendingStatus.CREATED.value,
        )
        .values(
            status=PendingStatus.CONFIRMED.value,
            is_confirmed=True,
            item_name=request.item_name,
            supplier_name=request.supplier_name,
            category_id=request.category_id,
            resolved_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.rollback()
        return await _resolve_lost_race(session, user_id, pending_id)

    row = TransactionRow(
        user_id=user_id,
        pending_id=pending_id,
        amount=amount,
        currency=CURRENCY,
        direction=TxnDirection.OUT.value,
        description=describe_payment(request.item_name, request.supplier_name, counterparty_name),
        counterparty_phone=counterparty_phone,
        category_id=request.category_id,
        transaction_type=TRANSACTION_TYPE,
        reference_code=pending.reference_code,
        notes=sms_notes(pending.raw_text),
        is_personal=request.is_personal,
        is_loan=request.is_loan,
        loan_recipient=request.loan_recipient,
        expected_repayment_date=request.expected_repayment_date,
        is_repaid=False,
        status=TRANSACTION_STATUS,
        transaction_date=pending.created_at,
        created_at=now,
    )
    session.add(row)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return await _resolve_lost_race(session, user_id, pending_id)

    transaction = Transaction.model_validate(row)
    CONFIRMED.inc()
    logger.info("Pending #%s confirmed → transaction #%s (%s %s)",
                pending_id, transaction.id, transaction.amount, transaction.currency)

    ctx = ConfirmContext(
        user_id=user_id,
        pending_id=pending_id,
        counterparty_phone=counterparty_phone,
        amount=amount,
        item_name=request.item_name,
        supplier_name=request.supplier_name,
        category_id=request.category_id,
        is_personal=request.is_personal,
        now=now,
        transaction=transaction,
        settings=settings,
    )
    await run_enrichment(session, ctx, ENRICHMENT_HOOKS if hooks is None else hooks)
    return transaction


async def reject_pending(
    session: AsyncSession,
    *,
    user_id: str,
    pending_id: int,
    clock: Clock = system_clock,
) -> PendingTransaction:
    """CREATED → REJECTED. Повторный reject – no-op, reject подтверждённого – ошибка."""
    pending = await get_pending(session, user_id, pending_id)
    if pending is None:
        raise PendingNotFound(pending_id)
    if pending.status == PendingStatus.REJECTED.value:
        return PendingTransaction.model_validate(pending)
    if pending.status == PendingStatus.CONFIRMED.value:
        raise PendingStateError(pending_id, pending.status, "reject")

    result = await session.execute(
        update(PendingTransactionRow)
        .where(
            PendingTransactionRow.id == pending_id,
            PendingTransactionRow.user_id == user_id,
            PendingTransactionRow.status == PendingStatus.CREATED.value,
        )
        .values(status=PendingStatus.REJECTED.value, resolved_at=clock())
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    pending = await get_pending(session, user_id, pending_id)
    assert pending is not None
    if result.rowcount == 0 and pending.status != PendingStatus.REJECTED.value:
        raise PendingStateError(pending_id, pending.status, "reject")
    if result.rowcount:
        REJECTED.inc()
        logger.info("Pending #%s rejected by user %s", pending_id, user_id)
    return PendingTransaction.model_validate(pending)


__all__ = [
    "ConfirmContext",
    "EnrichmentHook",
    "ENRICHMENT_HOOKS",
    "confirm_pending",
    "reject_pending",
    "run_enrichment",
    "validate_request",
    "describe_payment",
    "learn_supplier",
    "learn_item",
]
