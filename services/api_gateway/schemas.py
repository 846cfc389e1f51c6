# services/api_gateway/schemas.py
"""Pydantic DTO-models used by *API Gateway*.

Отделяем их от `main.py`, чтобы:
1. Избежать циклических импортов.
2. Упростить автогенерацию OpenAPI-документации.

На проводе – camelCase, как и у доменных моделей.
"""
from __future__ import annotations

import datetime as _dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from libs.models import (
    Classification,
    ParsedExtraction,
    PendingTransaction,
    Suggestion,
    Supplier,
    Transaction,
)


class _CamelSchema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubmitNotificationPayload(_CamelSchema):
    """Уведомление от листенера на телефоне (или ручная тестовая отправка)."""

    sms_text: str = Field(..., min_length=1)
    sender_number: str = ""
    line_id: Optional[str] = Field(None, description="SIM1 / SIM2, если устройство знает")
    received_at: Optional[_dt.datetime] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "smsText": "QR345678 Confirmed. Ksh2,500.00 sent to JOHN KAMAU 0712345678 ...",
                "senderNumber": "MPESA",
                "lineId": "SIM1",
            }
        }
    )


class SubmissionResponse(_CamelSchema):
    """Черновик создан (201) или уже был (200, `duplicate=true`)."""

    pending_transaction: PendingTransaction
    parsed_data: ParsedExtraction
    classification: Classification
    matched_supplier: Optional[Supplier] = None
    suggestion: Optional[Suggestion] = None
    needs_confirmation: bool = True
    duplicate: bool = False


class IrrelevantResponse(_CamelSchema):
    processed: bool = False
    reason: str = "irrelevant"


class InvalidResponse(_CamelSchema):
    detail: str
    parsed_data: ParsedExtraction


class ConfirmResponse(_CamelSchema):
    transaction: Transaction
    confirmed: bool = True
