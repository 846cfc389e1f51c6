# tests/test_pipeline.py
"""Ingest → confirm/reject → supplier/item memory на настоящей (sqlite) БД."""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from conftest import SENT_SMS, FakeClock, make_sms
from sqlalchemy import func, select

from db.models import PendingTransactionRow, TransactionRow
from libs.errors import ConfirmationValidationError, LoanNotFound, PendingNotFound, PendingStateError
from libs.models import (
    AccountType,
    ConfirmRequest,
    Direction,
    LineId,
    PendingStatus,
    RawNotification,
    TxnDirection,
)
from services.pipeline.confirm import confirm_pending, learn_item, reject_pending
from services.pipeline.ingest import IngestOutcome, submit_notification
from services.pipeline.loans import list_outstanding_loans, mark_loan_repaid
from services.pipeline.memory import (
    find_item,
    find_supplier_by_phone,
    list_items,
    list_suppliers,
    push_recent,
    remember_item,
)
from services.pipeline.store import get_pending, list_unconfirmed

USER = "user-1"


async def _submit(session, clock, text, user_id=USER, **extra):
    notification = RawNotification(text=text, sender_id="MPESA", **extra)
    return await submit_notification(session, user_id=user_id, notification=notification, clock=clock)


async def _count(session, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


def _request(item="Tomatoes", supplier="John Kamau", category="cat-food", personal=False):
    return ConfirmRequest(item_name=item, supplier_name=supplier, category_id=category, is_personal=personal)


# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------

async def test_valid_notification_creates_pending(session, clock):
    result = await _submit(session, clock, SENT_SMS, line_id="SIM1")

    assert result.outcome is IngestOutcome.CREATED
    assert result.needs_confirmation
    pending = result.pending
    assert pending.reference_code == "QR345678"
    assert pending.amount == Decimal("2500.00")
    assert pending.counterparty_phone == "0712345678"
    assert pending.counterparty_name == "JOHN KAMAU"
    assert pending.resulting_balance == Decimal("15750.50")
    assert pending.direction == Direction.SENT
    assert pending.line_id == LineId.LINE_A
    assert pending.line_rule == "device_metadata"
    assert pending.account_type == AccountType.BUSINESS
    assert pending.status == PendingStatus.CREATED
    assert pending.is_confirmed is False
    assert pending.sender_id == "MPESA"
    assert result.suggestion is not None
    assert result.matched_supplier is None


async def test_same_reference_twice_yields_one_pending(session, clock):
    first = await _submit(session, clock, SENT_SMS)
    clock.tick(minutes=1)
    second = await _submit(session, clock, SENT_SMS)

    assert first.outcome is IngestOutcome.CREATED
    assert second.outcome is IngestOutcome.DUPLICATE
    assert second.pending.id == first.pending.id
    assert second.classification == first.classification
    assert await _count(session, PendingTransactionRow) == 1


async def test_concurrent_same_reference_yields_one_pending(sessionmaker, clock):
    async def submit_in_own_session():
        async with sessionmaker() as session:
            return await _submit(session, clock, SENT_SMS)

    results = await asyncio.gather(submit_in_own_session(), submit_in_own_session())

    assert sorted(r.outcome.value for r in results) == sorted(
        [IngestOutcome.CREATED.value, IngestOutcome.DUPLICATE.value]
    )
    assert results[0].pending.id == results[1].pending.id
    async with sessionmaker() as session:
        assert await _count(session, PendingTransactionRow) == 1


async def test_same_reference_for_other_user_is_separate(session, clock):
    await _submit(session, clock, SENT_SMS, user_id="user-1")
    other = await _submit(session, clock, SENT_SMS, user_id="user-2")

    assert other.outcome is IngestOutcome.CREATED
    assert await _count(session, PendingTransactionRow) == 2


async def test_invalid_extraction_creates_nothing(session, clock):
    result = await _submit(session, clock, "M-PESA confirmed. Your request is being processed.")

    assert result.outcome is IngestOutcome.INVALID
    assert result.pending is None
    assert result.extraction is not None and not result.extraction.is_valid
    assert await _count(session, PendingTransactionRow) == 0


async def test_irrelevant_message_is_dropped(session, clock):
    notification = RawNotification(text="See you at 5", sender_id="+254700000000")
    result = await submit_notification(session, user_id=USER, notification=notification, clock=clock)

    assert result.outcome is IngestOutcome.IRRELEVANT
    assert result.extraction is None
    assert await _count(session, PendingTransactionRow) == 0


async def test_received_at_drives_attribution(session, clock):
    # часы – 10:00, но уведомление пришло ночью
    result = await _submit(session, clock, SENT_SMS, received_at=datetime(2025, 8, 27, 23, 30))
    assert result.pending.line_id == LineId.LINE_B
    assert result.pending.line_rule == "after_hours"


async def test_aware_utc_clock_uses_local_business_hours(session):
    # 16:30 UTC == 19:30 в Найроби: обе эвристики – «после работы»
    utc_clock = FakeClock(datetime(2025, 8, 27, 16, 30, tzinfo=timezone.utc))
    result = await _submit(session, utc_clock, SENT_SMS)

    assert result.pending.line_id == LineId.LINE_B
    assert result.pending.line_rule == "after_hours"
    assert result.pending.account_type == AccountType.PERSONAL
    assert result.pending.account_rule == "after_hours"


async def test_unconfirmed_newest_first(session, clock):
    await _submit(session, clock, make_sms("QA11111111"))
    clock.tick(minutes=5)
    await _submit(session, clock, make_sms("QB22222222"))
    clock.tick(minutes=5)
    await _submit(session, clock, make_sms("QC33333333"))

    rows = await list_unconfirmed(session, USER)
    assert [r.reference_code for r in rows] == ["QC33333333", "QB22222222", "QA11111111"]
    assert await list_unconfirmed(session, "someone-else") == []


# ---------------------------------------------------------------------------
# Confirm
# ---------------------------------------------------------------------------

async def test_confirm_creates_transaction(session, clock, settings):
    pending = (await _submit(session, clock, SENT_SMS)).pending
    clock.tick(hours=1)

    txn = await confirm_pending(
        session, user_id=USER, pending_id=pending.id, request=_request(), clock=clock, settings=settings
    )

    assert txn.pending_id == pending.id
    assert txn.amount == Decimal("2500.00")
    assert txn.currency == "KES"
    assert txn.direction == TxnDirection.OUT
    assert txn.description == "Tomatoes"
    assert txn.category_id == "cat-food"
    assert txn.transaction_type == "MPESA"
    assert txn.status == "COMPLETED"
    assert txn.reference_code == "QR345678"
    assert txn.counterparty_phone == "0712345678"
    assert txn.notes == f"Processed from SMS: {SENT_SMS[:100]}..."

    assert await list_unconfirmed(session, USER) == []
    row = await session.get(PendingTransactionRow, pending.id)
    await session.refresh(row)
    assert row.status == PendingStatus.CONFIRMED.value
    assert row.is_confirmed is True
    assert row.item_name == "Tomatoes"
    assert row.supplier_name == "John Kamau"


async def test_confirm_twice_yields_one_transaction(session, clock, settings):
    pending = (await _submit(session, clock, SENT_SMS)).pending

    first = await confirm_pending(session, user_id=USER, pending_id=pending.id, request=_request(), clock=clock, settings=settings)
    second = await confirm_pending(session, user_id=USER, pending_id=pending.id, request=_request(item="Rice"), clock=clock, settings=settings)

    assert second.id == first.id
    assert second.description == "Tomatoes"
    assert await _count(session, TransactionRow) == 1
    supplier = await find_supplier_by_phone(session, USER, "0712345678")
    # повтор не гоняет хуки второй раз
    assert supplier.total_transactions == 1


@pytest.mark.parametrize(
    "request_kwargs, missing",
    [
        (dict(item=""), ["itemName"]),
        (dict(supplier="   "), ["supplierName"]),
        (dict(item="", supplier="", category=""), ["itemName", "supplierName", "categoryId"]),
    ],
)
async def test_confirm_validation(session, clock, request_kwargs, missing):
    pending = (await _submit(session, clock, SENT_SMS)).pending

    with pytest.raises(ConfirmationValidationError) as exc_info:
        await confirm_pending(session, user_id=USER, pending_id=pending.id, request=_request(**request_kwargs), clock=clock)

    assert exc_info.value.fields == missing
    assert await _count(session, TransactionRow) == 0
    assert len(await list_unconfirmed(session, USER)) == 1


async def test_confirm_unknown_or_foreign_pending(session, clock):
    pending = (await _submit(session, clock, SENT_SMS)).pending

    with pytest.raises(PendingNotFound):
        await confirm_pending(session, user_id=USER, pending_id=9999, request=_request(), clock=clock)
    with pytest.raises(PendingNotFound):
        await confirm_pending(session, user_id="intruder", pending_id=pending.id, request=_request(), clock=clock)


async def test_enrichment_failure_keeps_transaction(session, clock, settings, mocker):
    capture = mocker.patch("services.pipeline.confirm.sentry_capture")
    pending = (await _submit(session, clock, SENT_SMS)).pending

    async def broken_hook(_session, _ctx):
        raise RuntimeError("supplier table is on fire")

    txn = await confirm_pending(
        session,
        user_id=USER,
        pending_id=pending.id,
        request=_request(),
        clock=clock,
        settings=settings,
        hooks=[("supplier", broken_hook), ("item", learn_item)],
    )

    assert await session.get(TransactionRow, txn.id) is not None
    capture.assert_called_once()
    extras = capture.call_args.kwargs["extras"]
    assert extras["user_id"] == USER
    assert extras["pending_id"] == pending.id
    assert extras["transaction_id"] == txn.id
    assert extras["hook"] == "supplier"
    # следующий хук всё равно отработал
    item = await find_item(session, USER, "tomatoes")
    assert item is not None and item.purchase_count == 1
    assert await find_supplier_by_phone(session, USER, "0712345678") is None



async def test_concurrent_confirms_yield_one_transaction(sessionmaker, clock, settings):
    async with sessionmaker() as session:
        pending = (await _submit(session, clock, SENT_SMS)).pending

    async def confirm_in_own_session(item):
        async with sessionmaker() as session:
            return await confirm_pending(
                session, user_id=USER, pending_id=pending.id, request=_request(item=item), clock=clock, settings=settings
            )

    first, second = await asyncio.gather(confirm_in_own_session("Tomatoes"), confirm_in_own_session("Rice"))

    assert first.id == second.id
    assert first.description == second.description
    async with sessionmaker() as session:
        assert await _count(session, TransactionRow) == 1
        supplier = await find_supplier_by_phone(session, USER, "0712345678")
        assert supplier.total_transactions == 1


async def test_confirm_losing_race_returns_winner(sessionmaker, clock, settings, mocker):
    async with sessionmaker() as session:
        pending = (await _submit(session, clock, SENT_SMS)).pending

    winner = []

    async def read_then_lose(session, user_id, pending_id):
        # черновик прочитан как CREATED, но другой запрос успевает подтвердить раньше
        row = await get_pending(session, user_id, pending_id)
        if not winner:
            winner.append(None)
            async with sessionmaker() as other:
                winner[0] = await confirm_pending(
                    other, user_id=USER, pending_id=pending_id, request=_request(item="Rice"), clock=clock, settings=settings
                )
        return row

    mocker.patch("services.pipeline.confirm.get_pending", side_effect=read_then_lose)

    async with sessionmaker() as session:
        loser = await confirm_pending(
            session, user_id=USER, pending_id=pending.id, request=_request(item="Tomatoes"), clock=clock, settings=settings
        )

    assert loser.id == winner[0].id
    assert loser.description == "Rice"
    async with sessionmaker() as session:
        assert await _count(session, TransactionRow) == 1


# ---------------------------------------------------------------------------
# Reject
# ---------------------------------------------------------------------------

async def test_reject_leaves_unconfirmed_list(session, clock):
    pending = (await _submit(session, clock, SENT_SMS)).pending

    rejected = await reject_pending(session, user_id=USER, pending_id=pending.id, clock=clock)
    assert rejected.status == PendingStatus.REJECTED
    assert rejected.resolved_at is not None
    assert await list_unconfirmed(session, USER) == []

    # повторный reject – no-op
    again = await reject_pending(session, user_id=USER, pending_id=pending.id, clock=clock)
    assert again.status == PendingStatus.REJECTED

    with pytest.raises(PendingStateError):
        await confirm_pending(session, user_id=USER, pending_id=pending.id, request=_request(), clock=clock)
    assert await _count(session, TransactionRow) == 0


async def test_reject_after_confirm_is_conflict(session, clock, settings):
    pending = (await _submit(session, clock, SENT_SMS)).pending
    await confirm_pending(session, user_id=USER, pending_id=pending.id, request=_request(), clock=clock, settings=settings)

    with pytest.raises(PendingStateError):
        await reject_pending(session, user_id=USER, pending_id=pending.id, clock=clock)


async def test_reject_unknown(session, clock):
    with pytest.raises(PendingNotFound):
        await reject_pending(session, user_id=USER, pending_id=42, clock=clock)



# ---------------------------------------------------------------------------
# Loans
# ---------------------------------------------------------------------------

def _loan_request(**overrides):
    fields = dict(
        item_name="Loan to Jane",
        supplier_name="Jane Wanjiru",
        category_id="cat-loans",
        is_personal=True,
        is_loan=True,
        loan_recipient="  Jane Wanjiru ",
        expected_repayment_date=datetime(2025, 9, 30, 12, 0),
    )
    fields.update(overrides)
    return ConfirmRequest(**fields)


async def test_loan_is_tracked_until_repaid(session, clock, settings):
    pending = (await _submit(session, clock, SENT_SMS)).pending
    txn = await confirm_pending(
        session, user_id=USER, pending_id=pending.id, request=_loan_request(), clock=clock, settings=settings
    )

    assert txn.is_loan is True
    assert txn.loan_recipient == "Jane Wanjiru"
    assert txn.expected_repayment_date == datetime(2025, 9, 30, 12, 0)
    assert txn.is_repaid is False
    assert [row.id for row in await list_outstanding_loans(session, USER)] == [txn.id]
    assert await list_outstanding_loans(session, "user-2") == []

    repaid = await mark_loan_repaid(session, user_id=USER, transaction_id=txn.id)
    assert repaid.is_repaid is True
    assert await list_outstanding_loans(session, USER) == []

    # повторная отметка – no-op
    again = await mark_loan_repaid(session, user_id=USER, transaction_id=txn.id)
    assert again.is_repaid is True


async def test_loan_fields_need_loan_flag(session, clock, settings):
    pending = (await _submit(session, clock, SENT_SMS)).pending
    txn = await confirm_pending(
        session,
        user_id=USER,
        pending_id=pending.id,
        request=_loan_request(is_loan=False),
        clock=clock,
        settings=settings,
    )

    assert txn.is_loan is False
    assert txn.loan_recipient is None
    assert txn.expected_repayment_date is None
    assert await list_outstanding_loans(session, USER) == []
    with pytest.raises(LoanNotFound):
        await mark_loan_repaid(session, user_id=USER, transaction_id=txn.id)


async def test_mark_repaid_is_user_scoped(session, clock, settings):
    pending = (await _submit(session, clock, SENT_SMS)).pending
    txn = await confirm_pending(
        session, user_id=USER, pending_id=pending.id, request=_loan_request(), clock=clock, settings=settings
    )

    with pytest.raises(LoanNotFound):
        await mark_loan_repaid(session, user_id="intruder", transaction_id=txn.id)
    with pytest.raises(LoanNotFound):
        await mark_loan_repaid(session, user_id=USER, transaction_id=9999)
    assert len(await list_outstanding_loans(session, USER)) == 1


# ---------------------------------------------------------------------------
# Supplier / item memory
# ---------------------------------------------------------------------------

async def _confirm_new(session, clock, settings, ref, item, amount="2,500.00", category="cat-food"):
    pending = (await _submit(session, clock, make_sms(ref, amount=amount))).pending
    clock.tick(minutes=10)
    return await confirm_pending(
        session,
        user_id=USER,
        pending_id=pending.id,
        request=_request(item=item, category=category),
        clock=clock,
        settings=settings,
    )


async def test_supplier_memory_grows(session, clock, settings):
    await _confirm_new(session, clock, settings, "QA11111111", "Tomatoes")
    supplier = await find_supplier_by_phone(session, USER, "0712345678")
    assert supplier.common_items == ["Tomatoes"]
    assert supplier.total_transactions == 1
    assert supplier.name == "John Kamau"
    assert supplier.default_category_id == "cat-food"

    await _confirm_new(session, clock, settings, "QB22222222", "Rice")
    await session.refresh(supplier)
    assert supplier.common_items == ["Tomatoes", "Rice"]
    assert supplier.total_transactions == 2
    assert supplier.last_transaction_date == clock.now


async def test_suggestions_use_supplier_memory(session, clock, settings):
    await _confirm_new(session, clock, settings, "QA11111111", "Tomatoes")
    await _confirm_new(session, clock, settings, "QB22222222", "Rice")

    result = await _submit(session, clock, make_sms("QC33333333"))
    assert result.matched_supplier is not None
    assert result.matched_supplier.total_transactions == 2
    assert result.suggestion.item_names == ["Rice", "Tomatoes"]
    assert result.suggestion.default_category_id == "cat-food"


async def test_supplier_memory_is_bounded(session, clock, settings):
    tight = settings.model_copy(update={"supplier_item_memory": 2})
    for ref, item in (("QA11111111", "Tomatoes"), ("QB22222222", "Rice"), ("QC33333333", "Onions")):
        await _confirm_new(session, clock, tight, ref, item)

    supplier = await find_supplier_by_phone(session, USER, "0712345678")
    await session.refresh(supplier)
    assert supplier.common_items == ["Rice", "Onions"]
    assert supplier.total_transactions == 3


async def test_item_average_price_is_mean(session, clock, settings):
    await _confirm_new(session, clock, settings, "QA11111111", "Tomatoes", amount="100.00")
    await _confirm_new(session, clock, settings, "QB22222222", "TOMATOES", amount="200.00")
    await _confirm_new(session, clock, settings, "QC33333333", " tomatoes ", amount="300.00")

    items = await list_items(session, USER)
    assert len(items) == 1
    item = items[0]
    await session.refresh(item)
    assert item.name == "Tomatoes"
    assert item.purchase_count == 3
    assert item.avg_price == Decimal("200.00")
    assert item.last_price == Decimal("300.00")


async def test_item_average_does_not_drift(session, clock):
    for price in ("0.01", "0.02", "0.01", "0.01", "0.01"):
        await remember_item(
            session,
            user_id=USER,
            name="Matches",
            category_id="cat-house",
            price=Decimal(price),
            is_personal=False,
            now=clock(),
        )
    await session.commit()

    item = await find_item(session, USER, "matches")
    await session.refresh(item)
    assert item.purchase_count == 5
    assert item.total_spent == Decimal("0.06")
    # по-центовое скользящее среднее дало бы 0.02
    assert item.avg_price == Decimal("0.012")


async def test_lookups_are_user_scoped_and_filtered(session, clock, settings):
    await _confirm_new(session, clock, settings, "QA11111111", "Tomatoes", category="cat-food")
    await _confirm_new(session, clock, settings, "QB22222222", "Soap", category="cat-house")

    assert [i.name for i in await list_items(session, USER)] == ["Soap", "Tomatoes"]
    assert [i.name for i in await list_items(session, USER, "cat-house")] == ["Soap"]
    assert len(await list_suppliers(session, USER)) == 1
    assert await list_suppliers(session, "user-2") == []
    assert await list_items(session, "user-2") == []


def test_push_recent():
    assert push_recent(["a", "b", "c"], "d", 3) == ["b", "c", "d"]
    assert push_recent(["a", "b", "c"], "A", 3) == ["b", "c", "A"]
    assert push_recent(["a"], "  ", 3) == ["a"]
