"""Ingest: raw notification → pending transaction.

Один вход для HTTP-шлюза и NATS-воркера:

    gate → parse_sms → classify → ingest_pending → (supplier lookup) → suggest

Наружу ничего не бросается, кроме ошибок БД: исход ингеста – тег
:class:`IngestOutcome`, вызывающая сторона решает, какой это HTTP-код или
нужно ли отправить сообщение в DLQ.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from libs.attribution import Clock, classify, system_clock
from libs.classifier import is_relevant
from libs.config import Settings
from libs.models import (
    Classification,
    ParsedExtraction,
    PendingTransaction,
    RawNotification,
    Suggestion,
    Supplier,
)
from libs.regexes import parse_sms
from libs.suggestions import suggest
from services.pipeline.memory import find_supplier_by_phone
from services.pipeline.metrics import INGESTED, PROCESSING_TIME
from services.pipeline.store import ingest_pending

logger = logging.getLogger(__name__)

DEFAULT_SENDER = "M-PESA"


class IngestOutcome(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    IRRELEVANT = "irrelevant"
    INVALID = "invalid"


class IngestResult(BaseModel):
    outcome: IngestOutcome
    extraction: Optional[ParsedExtraction] = None
    classification: Optional[Classification] = None
    pending: Optional[PendingTransaction] = None
    matched_supplier: Optional[Supplier] = None
    suggestion: Optional[Suggestion] = None

    @property
    def needs_confirmation(self) -> bool:
        return self.pending is not None


async def submit_notification(
    session: AsyncSession,
    *,
    user_id: str,
    notification: RawNotification,
    clock: Clock = system_clock,
    settings: Settings | None = None,
) -> IngestResult:
    with PROCESSING_TIME.time():
        result = await _submit(session, user_id, notification, clock, settings)
    INGESTED.labels(outcome=result.outcome.value).inc()
    return result


async def _submit(
    session: AsyncSession,
    user_id: str,
    notification: RawNotification,
    clock: Clock,
    settings: Settings | None,
) -> IngestResult:
    text = notification.text
    if not is_relevant(notification.sender_id, text):
        logger.debug("Irrelevant notification from %r ignored", notification.sender_id)
        return IngestResult(outcome=IngestOutcome.IRRELEVANT)

    extraction = parse_sms(text)
    if not extraction.is_valid:
        logger.info(
            "Unparseable notification (amount=%s, ref=%r): %.80s",
            extraction.amount, extraction.reference_code, text,
        )
        return IngestResult(outcome=IngestOutcome.INVALID, extraction=extraction)

    received_at = notification.received_at or clock()
    classification = classify(
        text,
        extraction.counterparty_name,
        extraction.amount,
        notification.line_id,
        received_at,
        settings,
    )
    row, created = await ingest_pending(
        session,
        user_id=user_id,
        extraction=extraction,
        classification=classification,
        raw_text=text,
        sender_id=notification.sender_id or DEFAULT_SENDER,
        created_at=clock(),
    )
    pending = PendingTransaction.model_validate(row)
    if not created:
        # у дубликата атрибуция – та, что была сохранена первой
        classification = Classification(
            line_id=pending.line_id,
            account_type=pending.account_type,
            line_rule=pending.line_rule or "",
            account_rule=pending.account_rule or "",
        )

    supplier = None
    if extraction.counterparty_phone:
        supplier_row = await find_supplier_by_phone(session, user_id, extraction.counterparty_phone)
        if supplier_row is not None:
            supplier = Supplier.model_validate(supplier_row)

    return IngestResult(
        outcome=IngestOutcome.CREATED if created else IngestOutcome.DUPLICATE,
        extraction=extraction,
        classification=classification,
        pending=pending,
        matched_supplier=supplier,
        suggestion=suggest(extraction, text, supplier),
    )


__all__ = ["IngestOutcome", "IngestResult", "submit_notification"]
