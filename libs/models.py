# libs/models.py
"""Domain models shared by all services.

Все сервисы обмениваются *только* этими объектами (JSON-сериализованными) –
через HTTP-шлюз и через NATS, чтобы каждый компонент говорил на одном языке.

Levels
------
1. **RawNotification** – ровно то, что пришло в шлюз: текст, отправитель,
   подсказка о линии (SIM), никаких выводов о типе операции.
2. **ParsedExtraction** – результат детерминированного разбора регулярками.
3. **Classification** – эвристики линии и типа счёта (с именем сработавшего
   правила, чтобы было что тюнить).
4. **PendingTransaction** → **Transaction** – черновик, ожидающий
   подтверждения пользователем, и подтверждённая запись.
5. **Supplier** / **Item** – «память» для подсказок при следующих
   подтверждениях.

Дизайн-оговорка: Pydantic v2 (BaseModel) для валидации и JSON-dump.
На проводе – camelCase (`model_dump(by_alias=True)`), в коде – snake_case.
"""
from __future__ import annotations

import datetime as _dt
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel

__all__ = [
    "Direction",
    "LineId",
    "AccountType",
    "PendingStatus",
    "TxnDirection",
    "RawNotification",
    "ParsedExtraction",
    "Classification",
    "PendingTransaction",
    "ConfirmRequest",
    "Transaction",
    "Supplier",
    "Item",
    "Suggestion",
]


class Direction(str, Enum):
    """Направление операции, как его видно из текста уведомления."""

    SENT = "SENT"
    RECEIVED = "RECEIVED"
    WITHDRAWN = "WITHDRAWN"
    DEPOSITED = "DEPOSITED"
    UNKNOWN = "UNKNOWN"


class LineId(str, Enum):
    """Логическая линия (SIM), на которую пришло уведомление."""

    LINE_A = "LINE_A"
    LINE_B = "LINE_B"


class AccountType(str, Enum):
    BUSINESS = "BUSINESS"
    PERSONAL = "PERSONAL"


class PendingStatus(str, Enum):
    CREATED = "CREATED"
    CONFIRMED = "CONFIRMED"  # terminal
    REJECTED = "REJECTED"  # terminal


class TxnDirection(str, Enum):
    IN = "IN"
    OUT = "OUT"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class RawNotification(_CamelModel):
    """Что отдает *любой* инжестер (HTTP-форма, Android-листенер, NATS).

    `received_at` можно не передавать – тогда время проставит пайплайн из
    своих часов.
    """

    text: str = Field(..., min_length=1)
    sender_id: str = ""
    line_id: Optional[str] = Field(None, description="SIM1/SIM2 от устройства")
    received_at: Optional[_dt.datetime] = None
    user_id: Optional[str] = Field(None, description="Только для NATS-потока")


class ParsedExtraction(_CamelModel):
    """Нормализованный результат парсинга."""

    amount: Decimal = Decimal("0")
    counterparty_phone: Optional[str] = None
    counterparty_name: Optional[str] = None
    reference_code: str = ""
    resulting_balance: Optional[Decimal] = None
    direction: Direction = Direction.UNKNOWN

    # --- дополнительно ------------------------------------------------------
    occurred_at: Optional[_dt.datetime] = None
    transaction_cost: Optional[Decimal] = None
    rule: str = Field("fallback", description="Имя сработавшего паттерна")

    @field_validator("reference_code")
    def _upper_reference(cls, v: str) -> str:  # noqa: N805
        return v.strip().upper()

    @computed_field(alias="isValid")  # type: ignore[misc]
    @property
    def is_valid(self) -> bool:
        """Годится в черновик: сумма > 0 и есть код транзакции."""
        return self.amount > 0 and bool(self.reference_code)


class Classification(_CamelModel):
    line_id: LineId
    account_type: AccountType
    line_rule: str
    account_rule: str


class PendingTransaction(_CamelModel):
    id: int
    user_id: str
    raw_text: str
    sender_id: str
    line_id: LineId
    account_type: AccountType
    line_rule: Optional[str] = None
    account_rule: Optional[str] = None
    direction: Direction
    amount: Decimal
    counterparty_phone: Optional[str] = None
    counterparty_name: Optional[str] = None
    reference_code: str
    resulting_balance: Optional[Decimal] = None
    status: PendingStatus
    is_confirmed: bool
    item_name: Optional[str] = None
    supplier_name: Optional[str] = None
    category_id: Optional[str] = None
    created_at: _dt.datetime
    resolved_at: Optional[_dt.datetime] = None


class ConfirmRequest(_CamelModel):
    """Что пользователь ввёл в форме подтверждения."""

    item_name: str = ""
    supplier_name: str = ""
    category_id: str = ""
    is_personal: bool = False
    # Личный заём другу/родственнику: recipient и срок учитываются только при is_loan
    is_loan: bool = False
    loan_recipient: Optional[str] = None
    expected_repayment_date: Optional[_dt.datetime] = None


class Transaction(_CamelModel):
    id: int
    user_id: str
    pending_id: int
    amount: Decimal
    currency: str
    direction: TxnDirection
    description: str
    counterparty_phone: Optional[str] = None
    category_id: Optional[str] = None
    transaction_type: str
    reference_code: Optional[str] = None
    notes: Optional[str] = None
    is_personal: bool
    is_loan: bool = False
    loan_recipient: Optional[str] = None
    expected_repayment_date: Optional[_dt.datetime] = None
    is_repaid: bool = False
    status: str
    transaction_date: _dt.datetime


class Supplier(_CamelModel):
    id: int
    name: str
    phone: str
    common_items: list[str] = Field(default_factory=list)
    default_category_id: Optional[str] = None
    is_personal: bool = False
    total_transactions: int = 0
    last_transaction_date: Optional[_dt.datetime] = None


class Item(_CamelModel):
    id: int
    name: str
    category_id: Optional[str] = None
    avg_price: Decimal
    last_price: Decimal
    unit: str = "piece"
    purchase_count: int
    is_personal: bool = False


class Suggestion(_CamelModel):
    """Подсказка для формы подтверждения (ничего не сохраняет)."""

    purpose: str
    category_name: str
    item_names: list[str] = Field(default_factory=list)
    default_category_id: Optional[str] = None
