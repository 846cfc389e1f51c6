"""Supplier / item memory.

Обновляется после подтверждения и подпитывает подсказки при следующих
подтверждениях. Поставщик ищется по телефону (user_id + phone), товар – по
имени без учёта регистра (user_id + name_key).
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ItemRow, SupplierRow
from libs.decimal_utils import CENTS, mean_price

logger = logging.getLogger(__name__)


def item_key(name: str) -> str:
    return name.strip().lower()


def push_recent(items: Sequence[str], item: str, limit: int) -> list[str]:
    """Добавляет *item* в конец списка «последних», без дублей, не длиннее *limit*."""
    item = item.strip()
    if not item:
        return list(items)
    key = item_key(item)
    updated = [existing for existing in items if item_key(existing) != key]
    updated.append(item)
    if limit > 0:
        updated = updated[-limit:]
    return updated


async def find_supplier_by_phone(
    session: AsyncSession, user_id: str, phone: str, *, for_update: bool = False
) -> Optional[SupplierRow]:
    stmt = select(SupplierRow).where(SupplierRow.user_id == user_id, SupplierRow.phone == phone)
    if for_update:
        stmt = stmt.with_for_update()
    return (await session.execute(stmt)).scalar_one_or_none()


async def find_item(
    session: AsyncSession, user_id: str, name: str, *, for_update: bool = False
) -> Optional[ItemRow]:
    stmt = select(ItemRow).where(ItemRow.user_id == user_id, ItemRow.name_key == item_key(name))
    if for_update:
        stmt = stmt.with_for_update()
    return (await session.execute(stmt)).scalar_one_or_none()


async def remember_supplier(
    session: AsyncSession,
    *,
    user_id: str,
    phone: str,
    name: str,
    item_name: str,
    category_id: Optional[str],
    is_personal: bool,
    now: datetime,
    limit: int,
) -> SupplierRow:
    """Create-or-update. Коммит – на вызывающей стороне."""
    supplier = await find_supplier_by_phone(session, user_id, phone, for_update=True)
    if supplier is None:
        supplier = SupplierRow(
            user_id=user_id,
            name=name,
            phone=phone,
            common_items=push_recent([], item_name, limit),
            default_category_id=category_id or None,
            is_personal=is_personal,
            total_transactions=1,
            last_transaction_date=now,
            created_at=now,
            updated_at=now,
        )
        session.add(supplier)
        logger.info("New supplier %s (%s) for user %s", name, phone, user_id)
    else:
        # новый список, иначе JSON-колонка не заметит изменения
        supplier.common_items = push_recent(supplier.common_items or [], item_name, limit)
        supplier.total_transactions = (supplier.total_transactions or 0) + 1
        supplier.last_transaction_date = now
        supplier.updated_at = now
        if category_id and not supplier.default_category_id:
            supplier.default_category_id = category_id
    await session.flush()
    return supplier


async def remember_item(
    session: AsyncSession,
    *,
    user_id: str,
    name: str,
    category_id: Optional[str],
    price: Decimal,
    is_personal: bool,
    now: datetime,
) -> ItemRow:
    """Create-or-update; средняя цена – точное среднее по всем покупкам (через сумму)."""
    item = await find_item(session, user_id, name, for_update=True)
    price = price.quantize(CENTS)
    if item is None:
        item = ItemRow(
            user_id=user_id,
            name=name.strip(),
            name_key=item_key(name),
            category_id=category_id or None,
            avg_price=mean_price(price, 1),
            last_price=price,
            total_spent=price,
            unit="piece",
            purchase_count=1,
            is_personal=is_personal,
            created_at=now,
            updated_at=now,
        )
        session.add(item)
        logger.info("New item %r for user %s", item.name, user_id)
    else:
        item.total_spent = (item.total_spent or Decimal("0")) + price
        item.purchase_count += 1
        item.avg_price = mean_price(item.total_spent, item.purchase_count)
        item.last_price = price
        item.updated_at = now
    await session.flush()
    return item


async def list_suppliers(session: AsyncSession, user_id: str) -> Sequence[SupplierRow]:
    stmt = (
        select(SupplierRow)
        .where(SupplierRow.user_id == user_id)
        .order_by(SupplierRow.last_transaction_date.desc().nulls_last(), SupplierRow.name)
    )
    return (await session.execute(stmt)).scalars().all()


async def list_items(
    session: AsyncSession, user_id: str, category_id: Optional[str] = None
) -> Sequence[ItemRow]:
    stmt = select(ItemRow).where(ItemRow.user_id == user_id)
    if category_id:
        stmt = stmt.where(ItemRow.category_id == category_id)
    return (await session.execute(stmt.order_by(ItemRow.name))).scalars().all()


__all__ = [
    "item_key",
    "push_recent",
    "find_supplier_by_phone",
    "find_item",
    "remember_supplier",
    "remember_item",
    "list_suppliers",
    "list_items",
]
