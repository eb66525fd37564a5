from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from conftest import FakeAsyncSession, make_loan, make_payment, make_schedule

from app.core.errors import PersistenceError, ValidationError
from app.models.loan_payment import LoanPayment
from app.schemas.loan import PRESERVED_STATUSES
from app.services.amortization import BreakdownEntry, advance_due_date
from app.services.payment_schedule import apply_reconciliation, is_updateable, reconcile


def _breakdown(count: int, first: date = date(2025, 2, 15)) -> list[BreakdownEntry]:
    return [
        BreakdownEntry(
            payment_number=index + 1,
            due_date=advance_due_date(first, "monthly", index),
            amount=Decimal("500.00"),
            interest=Decimal("100.00"),
            principal=Decimal("400.00"),
            remaining_balance=Decimal("1000.00") - Decimal("400.00") * index,
        )
        for index in range(count)
    ]


def test_is_updateable_only_pending_and_cancelled():
    assert is_updateable(make_payment(status="pending"))
    assert is_updateable(make_payment(status="cancelled"))
    for status in ("paid", "confirmed", "failed", "deferred", "manual", "rejected", "rebate", "scheduled"):
        assert not is_updateable(make_payment(status=status))


def test_is_updateable_respects_cutover():
    payment = make_payment(payment_date=date(2025, 1, 15))
    assert is_updateable(payment, date(2025, 1, 15))
    assert not is_updateable(payment, date(2025, 1, 16))


@pytest.mark.parametrize("status", sorted(item.value for item in PRESERVED_STATUSES))
def test_preserved_statuses_are_never_updateable(status):
    assert not is_updateable(make_payment(status=status, payment_date=date(2025, 6, 1)), date(2025, 1, 1))


def test_reconcile_equal_lengths_updates_everything():
    loan = make_loan()
    existing = make_schedule(loan, count=3)
    breakdown = _breakdown(3)

    plan = reconcile(existing, breakdown)

    assert [item.payment for item in plan.to_update] == existing
    assert [item.entry for item in plan.to_update] == breakdown
    assert plan.to_insert == []
    assert plan.to_delete == []


def test_reconcile_shorter_schedule_inserts_tail():
    loan = make_loan()
    existing = make_schedule(loan, count=2)
    breakdown = _breakdown(5)

    plan = reconcile(existing, breakdown)

    assert len(plan.to_update) == 2
    assert plan.to_insert == breakdown[2:]
    assert plan.to_delete == []


def test_reconcile_longer_schedule_deletes_surplus():
    loan = make_loan()
    existing = make_schedule(loan, count=5)
    breakdown = _breakdown(2)

    plan = reconcile(existing, breakdown)

    assert [item.payment for item in plan.to_update] == existing[:2]
    assert plan.to_insert == []
    assert plan.to_delete == existing[2:]


def test_reconcile_skips_preserved_and_pre_cutover_rows():
    loan = make_loan()
    existing = make_schedule(
        loan,
        count=5,
        statuses=["paid", "failed", "pending", "deferred", "pending"],
    )
    breakdown = _breakdown(3)

    plan = reconcile(existing, breakdown, cutover_date=existing[2].payment_date)

    updated = [item.payment for item in plan.to_update]
    assert updated == [existing[2], existing[4]]
    assert plan.to_insert == breakdown[2:]
    assert plan.to_delete == []
    assert existing[3] not in updated


def test_reconcile_rejects_empty_breakdown():
    with pytest.raises(ValidationError):
        reconcile(make_schedule(make_loan(), count=2), [])


@pytest.mark.asyncio
async def test_apply_reconciliation_writes_rows():
    loan = make_loan()
    existing = make_schedule(loan, count=3)
    existing[0].status = "cancelled"
    existing[0].notes = "cancelled by processor"
    breakdown = _breakdown(2)
    plan = reconcile(existing, breakdown)
    db = FakeAsyncSession()

    counts = await apply_reconciliation(db, loan.id, plan)

    assert (counts.updated, counts.inserted, counts.deleted) == (2, 0, 1)
    assert existing[0].status == "pending"
    assert existing[0].notes is None
    assert existing[0].payment_date == breakdown[0].due_date
    assert existing[1].remaining_balance == breakdown[1].remaining_balance
    assert db.deleted == [existing[2]]
    assert db.flushed is True


@pytest.mark.asyncio
async def test_apply_reconciliation_inserts_new_installments():
    loan = make_loan()
    existing = make_schedule(loan, count=1)
    breakdown = _breakdown(3)
    db = FakeAsyncSession()

    counts = await apply_reconciliation(db, loan.id, reconcile(existing, breakdown))

    assert counts.inserted == 2
    inserted = [row for row in db.added_of(LoanPayment) if row is not existing[0]]
    assert [row.payment_number for row in inserted] == [2, 3]
    assert all(row.loan_id == loan.id and row.status == "pending" for row in inserted)
    assert inserted[0].payment_date == breakdown[1].due_date


@pytest.mark.asyncio
async def test_apply_reconciliation_wraps_database_errors():
    loan = make_loan()
    db = FakeAsyncSession()
    db.fail_on_flush = OperationalError("flush", {}, Exception("down"))

    with pytest.raises(PersistenceError):
        await apply_reconciliation(db, loan.id, reconcile(make_schedule(loan, count=1), _breakdown(1)))
