from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import PersistenceError, ValidationError
from app.models.loan_payment import LoanPayment
from app.schemas.loan import PRESERVED_STATUSES, PaymentStatus, UPDATEABLE_STATUSES
from app.services.amortization import BreakdownEntry


logger = logging.getLogger(__name__)

_UPDATEABLE_VALUES = tuple(status.value for status in UPDATEABLE_STATUSES)
_PRESERVED_VALUES = frozenset(status.value for status in PRESERVED_STATUSES)


@dataclass(frozen=True)
class ScheduleUpdate:
    payment: LoanPayment
    entry: BreakdownEntry


@dataclass(frozen=True)
class ScheduleReconciliation:
    to_update: list[ScheduleUpdate] = field(default_factory=list)
    to_insert: list[BreakdownEntry] = field(default_factory=list)
    to_delete: list[LoanPayment] = field(default_factory=list)


@dataclass(frozen=True)
class ReconciliationCounts:
    updated: int
    inserted: int
    deleted: int


def is_updateable(payment: LoanPayment, cutover_date: date | None = None) -> bool:
    # settled, deferred and failed rows are ledger history
    if payment.status in _PRESERVED_VALUES or payment.status not in _UPDATEABLE_VALUES:
        return False
    if cutover_date is not None and payment.payment_date < cutover_date:
        return False
    return True


def reconcile(
    existing: list[LoanPayment],
    breakdown: list[BreakdownEntry],
    cutover_date: date | None = None,
) -> ScheduleReconciliation:
    """Diff a recalculated breakdown against the loan's updateable installments.

    Rows are paired by position, not by date: the i-th updateable installment
    (input order, which callers keep ascending by due date) takes the i-th
    breakdown entry. Installments outside the updateable subset are never part
    of the result.
    """
    if not breakdown:
        raise ValidationError("recalculated breakdown is empty")

    updateable = [payment for payment in existing if is_updateable(payment, cutover_date)]

    to_update = [
        ScheduleUpdate(payment=payment, entry=entry)
        for payment, entry in zip(updateable, breakdown)
    ]
    to_delete = updateable[len(breakdown):]
    to_insert = breakdown[len(updateable):]
    return ScheduleReconciliation(to_update=to_update, to_insert=list(to_insert), to_delete=list(to_delete))


async def list_updateable_payments(
    db: AsyncSession,
    loan_id: UUID,
    cutover_date: date | None = None,
) -> list[LoanPayment]:
    stmt = select(LoanPayment).where(
        LoanPayment.loan_id == loan_id,
        LoanPayment.status.in_(_UPDATEABLE_VALUES),
    )
    if cutover_date is not None:
        stmt = stmt.where(LoanPayment.payment_date >= cutover_date)
    stmt = stmt.order_by(LoanPayment.payment_date.asc())
    try:
        return list((await db.execute(stmt)).scalars().all())
    except SQLAlchemyError as exc:
        raise PersistenceError("failed to list updateable payments", details={"loan_id": str(loan_id)}) from exc


def _apply_entry(payment: LoanPayment, entry: BreakdownEntry) -> None:
    payment.payment_date = entry.due_date
    payment.amount = entry.amount
    payment.interest = entry.interest
    payment.principal = entry.principal
    payment.remaining_balance = entry.remaining_balance
    payment.payment_number = entry.payment_number
    payment.status = PaymentStatus.PENDING.value
    payment.notes = None


async def apply_reconciliation(
    db: AsyncSession,
    loan_id: UUID,
    plan: ScheduleReconciliation,
) -> ReconciliationCounts:
    """Write a reconciliation plan into the current session and flush it.

    The caller owns the transaction; nothing is committed here.
    """
    for update in plan.to_update:
        _apply_entry(update.payment, update.entry)
        db.add(update.payment)

    for entry in plan.to_insert:
        db.add(
            LoanPayment(
                loan_id=loan_id,
                payment_date=entry.due_date,
                amount=entry.amount,
                interest=entry.interest,
                principal=entry.principal,
                remaining_balance=entry.remaining_balance,
                payment_number=entry.payment_number,
                status=PaymentStatus.PENDING.value,
            )
        )

    try:
        for payment in plan.to_delete:
            await db.delete(payment)
        await db.flush()
    except SQLAlchemyError as exc:
        raise PersistenceError("failed to apply schedule reconciliation", details={"loan_id": str(loan_id)}) from exc

    counts = ReconciliationCounts(
        updated=len(plan.to_update),
        inserted=len(plan.to_insert),
        deleted=len(plan.to_delete),
    )
    logger.info(
        "Applied schedule reconciliation",
        extra={
            "loan_id": str(loan_id),
            "updated": counts.updated,
            "inserted": counts.inserted,
            "deleted": counts.deleted,
        },
    )
    return counts
