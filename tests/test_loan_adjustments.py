from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from conftest import (
    FakeAsyncSession,
    FakeResult,
    entity_handler,
    make_contract,
    make_loan,
    make_schedule,
)

from app.core.errors import PersistenceError, ValidationError
from app.models.loan import Loan
from app.models.loan_contract import LoanContract
from app.models.loan_payment import LoanPayment
from app.models.outbox_message import OutboxMessage
from app.services import outbox
from app.services.loan_adjustments import (
    modify_schedule,
    record_manual_payment,
    record_rebate,
    stop_payments,
)


def _db_for(loan, payments, contract=None) -> FakeAsyncSession:
    db = FakeAsyncSession()
    db.on_execute(entity_handler(Loan, FakeResult(scalar=loan)))
    db.on_execute(entity_handler(LoanPayment, FakeResult(items=payments)))
    db.on_execute(entity_handler(LoanContract, FakeResult(items=[contract] if contract is not None else [])))
    return db


def _resync_messages(db) -> list[OutboxMessage]:
    return [message for message in db.added_of(OutboxMessage) if message.topic == outbox.TOPIC_PROCESSOR_RESYNC]


@pytest.mark.asyncio
async def test_manual_payment_splits_interest_and_rebuilds_tail():
    loan = make_loan()
    payments = make_schedule(loan, count=4, statuses=["paid", "pending", "pending", "pending"])
    db = _db_for(loan, payments, make_contract(loan=loan))

    outcome = await record_manual_payment(
        db, loan.id, payment_date=date(2025, 2, 1), amount=Decimal("600"), notes="cash at branch"
    )

    row = outcome.payment
    assert row.status == "manual"
    assert row.payment_number == 5
    assert (row.interest, row.principal, row.remaining_balance) == (
        Decimal("120.83"),
        Decimal("479.17"),
        Decimal("4520.83"),
    )
    assert row.notes == "cash at branch"
    assert loan.remaining_balance == Decimal("4520.83")
    assert outcome.loan_status == "active"

    assert outcome.schedule.updated == 3
    assert outcome.schedule.deleted == 0
    assert outcome.schedule.inserted >= 1
    first_open = payments[1]
    assert first_open.payment_date == date(2025, 2, 15)
    assert (first_open.interest, first_open.principal, first_open.remaining_balance) == (
        Decimal("109.25"),
        Decimal("390.75"),
        Decimal("4130.08"),
    )
    assert payments[0].status == "paid"

    assert outcome.side_effects_queued is True
    assert len(_resync_messages(db)) == 1
    assert db.commit_count == 1


@pytest.mark.asyncio
async def test_manual_payment_cannot_exceed_balance():
    loan = make_loan(remaining_balance=Decimal("300.00"))
    db = _db_for(loan, [])

    with pytest.raises(ValidationError) as excinfo:
        await record_manual_payment(db, loan.id, payment_date=date(2025, 2, 1), amount=Decimal("300.01"))

    assert "cannot exceed remaining balance" in excinfo.value.message
    assert db.rolled_back is True
    assert db.committed is False
    assert loan.remaining_balance == Decimal("300.00")


@pytest.mark.asyncio
async def test_manual_payment_without_upcoming_installments_keeps_schedule():
    loan = make_loan()
    payments = make_schedule(loan, count=2, statuses=["paid", "paid"])
    db = _db_for(loan, payments, make_contract(loan=loan))

    outcome = await record_manual_payment(db, loan.id, payment_date=date(2025, 3, 1), amount=Decimal("500"))

    assert outcome.schedule is None
    assert outcome.side_effects_queued is False
    assert _resync_messages(db) == []
    assert db.commit_count == 1


@pytest.mark.asyncio
async def test_rebate_reduces_balance_and_reconciles_tail():
    loan = make_loan(remaining_balance=Decimal("1000.00"))
    payments = make_schedule(loan, count=3, first_date=date(2025, 3, 15))
    db = _db_for(loan, payments, make_contract(loan=loan))

    outcome = await record_rebate(db, loan.id, payment_date=date(2025, 3, 1), amount=Decimal("400"))

    row = outcome.payment
    assert row.status == "rebate"
    assert row.amount == Decimal("400.00")
    assert row.interest is None
    assert row.remaining_balance == Decimal("600.00")
    assert loan.remaining_balance == Decimal("600.00")

    assert (outcome.schedule.updated, outcome.schedule.inserted, outcome.schedule.deleted) == (2, 0, 1)
    assert (payments[0].interest, payments[0].principal, payments[0].remaining_balance) == (
        Decimal("14.50"),
        Decimal("485.50"),
        Decimal("114.50"),
    )
    assert payments[1].amount == Decimal("117.27")
    assert payments[1].remaining_balance == Decimal("0.00")
    assert db.deleted == [payments[2]]
    assert len(_resync_messages(db)) == 1


@pytest.mark.asyncio
async def test_rebate_paying_off_loan_marks_completed_and_drops_open_installments():
    loan = make_loan(remaining_balance=Decimal("1000.00"))
    payments = make_schedule(loan, count=2, first_date=date(2025, 3, 15))
    db = _db_for(loan, payments, make_contract(loan=loan))

    outcome = await record_rebate(
        db, loan.id, payment_date=date(2025, 3, 1), amount=Decimal("1000"), mark_loan_as_paid=True
    )

    assert outcome.remaining_balance == Decimal("0.00")
    assert outcome.loan_status == "completed"
    assert loan.status == "completed"
    assert outcome.schedule.deleted == 2
    assert db.deleted == payments
    assert outcome.side_effects_queued is True


@pytest.mark.asyncio
async def test_adjustment_rolls_back_on_flush_error():
    loan = make_loan(remaining_balance=Decimal("1000.00"))
    payments = make_schedule(loan, count=2, first_date=date(2025, 3, 15))
    db = _db_for(loan, payments, make_contract(loan=loan))
    db.fail_on_flush = OperationalError("UPDATE", {}, Exception("connection reset"))

    with pytest.raises(PersistenceError):
        await record_rebate(db, loan.id, payment_date=date(2025, 3, 1), amount=Decimal("100"))

    assert db.rolled_back is True
    assert db.committed is False


@pytest.mark.asyncio
async def test_stop_cancels_installments_awaiting_collection():
    loan = make_loan()
    payments = make_schedule(loan, count=4, statuses=["paid", "pending", "scheduled", "failed"])
    payments[1].notes = "moved by borrower"
    db = _db_for(loan, payments)

    outcome = await stop_payments(db, loan.id)

    assert outcome.action == "stop"
    assert outcome.cancelled == 2
    assert [payment.status for payment in payments] == ["paid", "cancelled", "cancelled", "failed"]
    assert payments[1].notes.startswith("moved by borrower\nPayment stopped on ")
    assert payments[2].notes.startswith("Payment stopped on ")
    assert outcome.side_effects_queued is True
    assert len(_resync_messages(db)) == 1
    assert db.commit_count == 1


@pytest.mark.asyncio
async def test_stop_without_open_installments_is_rejected():
    loan = make_loan()
    db = _db_for(loan, make_schedule(loan, count=2, statuses=["paid", "failed"]))

    with pytest.raises(ValidationError):
        await stop_payments(db, loan.id)

    assert db.rolled_back is True
    assert db.added == []


@pytest.mark.asyncio
async def test_modify_replaces_open_installments_with_fixed_term_schedule():
    loan = make_loan(remaining_balance=Decimal("1000.00"), interest_rate=Decimal("12.00"))
    payments = make_schedule(loan, count=5, statuses=["paid", "rebate", "pending", "pending", "pending"])
    db = _db_for(loan, payments)

    outcome = await modify_schedule(
        db,
        loan.id,
        payment_frequency="monthly",
        number_of_payments=2,
        start_date=date(2025, 6, 1),
        payment_amount=Decimal("507.51"),
    )

    assert outcome.payment_amount == Decimal("507.51")
    assert outcome.remaining_balance == Decimal("1000.00")
    assert (outcome.schedule.updated, outcome.schedule.inserted, outcome.schedule.deleted) == (2, 0, 1)
    rewritten = payments[2:4]
    assert [payment.payment_number for payment in rewritten] == [3, 4]
    assert [payment.payment_date for payment in rewritten] == [date(2025, 6, 1), date(2025, 7, 1)]
    assert [payment.amount for payment in rewritten] == [Decimal("507.51"), Decimal("507.51")]
    assert [payment.remaining_balance for payment in rewritten] == [Decimal("502.49"), Decimal("0.00")]
    assert db.deleted == [payments[4]]
    assert [payment.status for payment in payments[:2]] == ["paid", "rebate"]
    assert outcome.side_effects_queued is True
    assert db.commit_count == 1


@pytest.mark.asyncio
async def test_modify_rejects_mismatched_payment_amount():
    loan = make_loan(remaining_balance=Decimal("1000.00"), interest_rate=Decimal("12.00"))
    db = _db_for(loan, make_schedule(loan, count=2))

    with pytest.raises(ValidationError) as excinfo:
        await modify_schedule(
            db,
            loan.id,
            payment_frequency="monthly",
            number_of_payments=2,
            start_date=date(2025, 6, 1),
            payment_amount=Decimal("600"),
        )

    assert excinfo.value.details["calculated_amount"] == "507.51"
    assert db.rolled_back is True
    assert db.committed is False


@pytest.mark.asyncio
async def test_modify_requires_term_fields():
    db = FakeAsyncSession()
    loan = make_loan()

    with pytest.raises(ValidationError) as excinfo:
        await modify_schedule(db, loan.id, payment_frequency="monthly", number_of_payments=None, start_date=None)

    assert excinfo.value.details["missing"] == ["number_of_payments", "start_date"]
    assert db.executed == []
