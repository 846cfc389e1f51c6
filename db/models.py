from datetime import datetime as dt
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class PendingTransactionRow(Base):
    """Черновик из SMS; живёт вечно как журнал аудита."""

    __tablename__ = "pending_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    raw_text: Mapped[str] = mapped_column(Text, nullable=False)
    sender_id: Mapped[str] = mapped_column(String, nullable=False, default="")
    line_id: Mapped[str] = mapped_column(String(16), nullable=False)
    account_type: Mapped[str] = mapped_column(String(16), nullable=False)
    line_rule: Mapped[str | None] = mapped_column(String(32))
    account_rule: Mapped[str | None] = mapped_column(String(32))
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    reference_code: Mapped[str] = mapped_column(String(32), nullable=False)

    # Необязательные поля
    counterparty_phone: Mapped[str | None] = mapped_column(String(16))
    counterparty_name: Mapped[str | None] = mapped_column(String)
    resulting_balance: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))

    # Жизненный цикл: CREATED → CONFIRMED | REJECTED
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="CREATED")
    is_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    item_name: Mapped[str | None] = mapped_column(String)
    supplier_name: Mapped[str | None] = mapped_column(String)
    category_id: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[dt] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[dt | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        # Единственный страж конкурентного ингеста
        UniqueConstraint("user_id", "reference_code", name="uq_pending_user_reference"),
        Index("idx_pending_user_status_created", "user_id", "status", "created_at"),
    )


class TransactionRow(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # 1:1 с черновиком – страж идемпотентного подтверждения
    pending_id: Mapped[int] = mapped_column(
        ForeignKey("pending_transactions.id"), nullable=False, unique=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    direction: Mapped[str] = mapped_column(String(3), nullable=False)
    description: Mapped[str] = mapped_column(String, nullable=False)
    counterparty_phone: Mapped[str | None] = mapped_column(String(16))
    category_id: Mapped[str | None] = mapped_column(String(64))
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False, default="MPESA")
    reference_code: Mapped[str | None] = mapped_column(String(32))
    notes: Mapped[str | None] = mapped_column(Text)
    is_personal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Учёт займов: is_repaid имеет смысл только при is_loan
    is_loan: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    loan_recipient: Mapped[str | None] = mapped_column(String)
    expected_repayment_date: Mapped[dt | None] = mapped_column(DateTime(timezone=True))
    is_repaid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="COMPLETED")
    transaction_date: Mapped[dt] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[dt] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_txn_user_date", "user_id", "transaction_date"),
        Index("idx_txn_user_loan", "user_id", "is_loan", "is_repaid"),
    )


class SupplierRow(Base):
    __tablename__ = "suppliers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    phone: Mapped[str] = mapped_column(String(16), nullable=False)
    # Последние товары, самые свежие – в конце
    common_items: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    default_category_id: Mapped[str | None] = mapped_column(String(64))
    is_personal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    total_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_transaction_date: Mapped[dt | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[dt] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[dt] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "phone", name="uq_supplier_user_phone"),
    )


class ItemRow(Base):
    __tablename__ = "items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    # lower(strip(name)) – поиск без учёта регистра
    name_key: Mapped[str] = mapped_column(String, nullable=False)
    category_id: Mapped[str | None] = mapped_column(String(64))
    avg_price: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    last_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    # сумма всех покупок; avg_price = total_spent / purchase_count
    total_spent: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    unit: Mapped[str] = mapped_column(String(16), nullable=False, default="piece")
    purchase_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_personal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[dt] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[dt] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "name_key", name="uq_item_user_name"),
        Index("idx_item_user_category", "user_id", "category_id"),
    )
