from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.context import set_loan_id
from app.core.errors import LedgerError, PersistenceError, ValidationError
from app.core.logging import get_ledger_logger
from app.core.settings import settings
from app.models.loan import Loan
from app.models.loan_payment import LoanPayment
from app.schemas.common import PaymentFrequency
from app.schemas.loan import ACTIVE_STATUSES, LoanStatus, PaymentStatus, SETTLED_STATUSES
from app.services import outbox
from app.services.amortization import amortize_term, payment_for_term, periodic_rate, recalculate, round_currency
from app.services.failed_payments import loan_interest_rate
from app.services.loan_payments import get_loan, latest_contract_terms, list_payments_for_loan
from app.services.payment_schedule import (
    ReconciliationCounts,
    ScheduleReconciliation,
    apply_reconciliation,
    is_updateable,
    reconcile,
)


logger = logging.getLogger(__name__)
ledger_logger = get_ledger_logger()

ZERO = Decimal("0.00")
PAYMENT_AMOUNT_TOLERANCE = Decimal("0.01")

_ACTIVE_VALUES = frozenset(status.value for status in ACTIVE_STATUSES)
_SETTLED_VALUES = frozenset(status.value for status in SETTLED_STATUSES)


@dataclass(frozen=True)
class BalanceAdjustment:
    payment: LoanPayment
    remaining_balance: Decimal
    loan_status: str
    schedule: ReconciliationCounts | None = None
    side_effects_queued: bool = False


@dataclass(frozen=True)
class ScheduleModification:
    action: str
    remaining_balance: Decimal
    payment_amount: Decimal | None = None
    payment_frequency: PaymentFrequency | None = None
    number_of_payments: int | None = None
    cancelled: int = 0
    schedule: ReconciliationCounts | None = None
    side_effects_queued: bool = False


def _as_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@asynccontextmanager
async def _ledger_write(db: AsyncSession, loan_id: UUID, action: str):
    """Commit the block's writes, or roll all of them back and re-raise as a ledger error."""
    try:
        yield
        await db.commit()
    except LedgerError as exc:
        await db.rollback()
        logger.warning(
            "Could not %s: %s",
            action,
            exc.message,
            extra={"loan_id": str(loan_id), "code": exc.code},
        )
        raise
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Could not %s", action, extra={"loan_id": str(loan_id)})
        raise PersistenceError(f"failed to {action}", details={"loan_id": str(loan_id)}) from exc


def _validate_amount(amount: Decimal, balance: Decimal) -> None:
    if amount <= 0:
        raise ValidationError("payment amount must be greater than 0")
    if amount > balance:
        raise ValidationError(
            f"payment amount ({amount}) cannot exceed remaining balance ({balance})",
            details={"amount": str(amount), "remaining_balance": str(balance)},
        )


def _next_payment_number(payments: list[LoanPayment]) -> int:
    return max((payment.payment_number or 0 for payment in payments), default=0) + 1


async def _schedule_terms(
    db: AsyncSession,
    loan_id: UUID,
    future: list[LoanPayment],
) -> tuple[PaymentFrequency, Decimal | None]:
    terms = await latest_contract_terms(db, loan_id)
    frequency = PaymentFrequency(
        (terms.payment_frequency if terms is not None else None) or settings.default_payment_frequency
    )
    candidates = [terms.payment_amount if terms is not None else None]
    candidates.extend(payment.amount for payment in future[:1])
    amount = next((_as_decimal(value) for value in candidates if value is not None and _as_decimal(value) > 0), None)
    return frequency, amount


async def _rebuild_tail(
    db: AsyncSession,
    loan: Loan,
    payments: list[LoanPayment],
    *,
    new_balance: Decimal,
    cutover: date,
    frequency: PaymentFrequency,
    payment_amount: Decimal | None,
) -> ReconciliationCounts | None:
    """Re-amortize the installments due on or after ``cutover`` from ``new_balance``.

    A paid-off loan drops its remaining updateable installments. Without any
    upcoming installment or a known payment amount the schedule is left as is.
    """
    future = [payment for payment in payments if is_updateable(payment, cutover)]
    if not future:
        return None
    if new_balance <= 0:
        return await apply_reconciliation(db, loan.id, ScheduleReconciliation(to_delete=future))
    if payment_amount is None:
        logger.warning("No payment amount for schedule recalculation", extra={"loan_id": str(loan.id)})
        return None
    breakdown = recalculate(
        new_balance,
        payment_amount,
        frequency,
        loan_interest_rate(loan),
        future[0].payment_date,
        settings.recalculation_max_periods,
    )
    plan = reconcile(payments, breakdown, cutover_date=cutover)
    return await apply_reconciliation(db, loan.id, plan)


async def _apply_adjustment(
    db: AsyncSession,
    loan: Loan,
    payments: list[LoanPayment],
    row: LoanPayment,
    *,
    new_balance: Decimal,
    mark_loan_as_paid: bool,
    frequency: PaymentFrequency,
    scheduled_amount: Decimal | None,
    reason: str,
) -> BalanceAdjustment:
    db.add(row)
    loan.remaining_balance = new_balance
    if mark_loan_as_paid and new_balance <= 0:
        loan.status = LoanStatus.COMPLETED.value
    db.add(loan)

    counts = await _rebuild_tail(
        db,
        loan,
        payments,
        new_balance=new_balance,
        cutover=row.payment_date + timedelta(days=1),
        frequency=frequency,
        payment_amount=scheduled_amount,
    )
    await db.flush()

    queued = False
    if counts is not None:
        message = await outbox.enqueue(db, outbox.TOPIC_PROCESSOR_RESYNC, {"loan_id": str(loan.id), "reason": reason})
        queued = message is not None

    return BalanceAdjustment(
        payment=row,
        remaining_balance=new_balance,
        loan_status=loan.status,
        schedule=counts,
        side_effects_queued=queued,
    )


async def record_manual_payment(
    db: AsyncSession,
    loan_id: UUID,
    *,
    payment_date: date,
    amount,
    notes: str | None = None,
    mark_loan_as_paid: bool = False,
) -> BalanceAdjustment:
    """Book a payment collected outside the processor.

    The amount is split into the current period's interest and principal; only
    the principal reduces the balance. Upcoming installments after
    ``payment_date`` are re-amortized from the new balance.
    """
    set_loan_id(str(loan_id))
    async with _ledger_write(db, loan_id, "record manual payment"):
        loan = await get_loan(db, loan_id)
        balance = round_currency(_as_decimal(loan.remaining_balance))
        amount = round_currency(_as_decimal(amount))
        _validate_amount(amount, balance)

        payments = await list_payments_for_loan(db, loan_id)
        cutover = payment_date + timedelta(days=1)
        frequency, scheduled_amount = await _schedule_terms(
            db, loan_id, [payment for payment in payments if is_updateable(payment, cutover)]
        )

        interest = round_currency(balance * periodic_rate(loan_interest_rate(loan), frequency))
        principal = max(ZERO, round_currency(amount - interest))
        new_balance = max(ZERO, round_currency(balance - principal))
        row = LoanPayment(
            loan_id=loan.id,
            payment_date=payment_date,
            amount=amount,
            interest=interest,
            principal=principal,
            remaining_balance=new_balance,
            payment_number=_next_payment_number(payments),
            status=PaymentStatus.MANUAL.value,
            notes=notes or f"Manual payment recorded on {date.today().isoformat()}",
        )
        outcome = await _apply_adjustment(
            db,
            loan,
            payments,
            row,
            new_balance=new_balance,
            mark_loan_as_paid=mark_loan_as_paid,
            frequency=frequency,
            scheduled_amount=scheduled_amount,
            reason=f"Payment schedule recalculated after manual payment of {amount}",
        )

    ledger_logger.info(
        "Manual payment of %s recorded",
        amount,
        extra={"loan_id": str(loan_id), "remaining_balance": str(outcome.remaining_balance)},
    )
    return outcome


async def record_rebate(
    db: AsyncSession,
    loan_id: UUID,
    *,
    payment_date: date,
    amount,
    notes: str | None = None,
    mark_loan_as_paid: bool = False,
) -> BalanceAdjustment:
    """Credit ``amount`` straight against the balance and re-amortize the tail."""
    set_loan_id(str(loan_id))
    async with _ledger_write(db, loan_id, "record rebate"):
        loan = await get_loan(db, loan_id)
        balance = round_currency(_as_decimal(loan.remaining_balance))
        amount = round_currency(_as_decimal(amount))
        _validate_amount(amount, balance)

        payments = await list_payments_for_loan(db, loan_id)
        cutover = payment_date + timedelta(days=1)
        frequency, scheduled_amount = await _schedule_terms(
            db, loan_id, [payment for payment in payments if is_updateable(payment, cutover)]
        )

        new_balance = max(ZERO, round_currency(balance - amount))
        row = LoanPayment(
            loan_id=loan.id,
            payment_date=payment_date,
            amount=amount,
            remaining_balance=new_balance,
            payment_number=_next_payment_number(payments),
            status=PaymentStatus.REBATE.value,
            notes=notes or f"Rebate recorded on {date.today().isoformat()}",
        )
        outcome = await _apply_adjustment(
            db,
            loan,
            payments,
            row,
            new_balance=new_balance,
            mark_loan_as_paid=mark_loan_as_paid,
            frequency=frequency,
            scheduled_amount=scheduled_amount,
            reason=f"Payment schedule recalculated after rebate of {amount}",
        )

    ledger_logger.info(
        "Rebate of %s recorded",
        amount,
        extra={"loan_id": str(loan_id), "remaining_balance": str(outcome.remaining_balance)},
    )
    return outcome


async def stop_payments(db: AsyncSession, loan_id: UUID) -> ScheduleModification:
    """Cancel every installment still awaiting collection."""
    set_loan_id(str(loan_id))
    async with _ledger_write(db, loan_id, "stop payments"):
        loan = await get_loan(db, loan_id)
        payments = await list_payments_for_loan(db, loan_id)
        awaiting = [payment for payment in payments if payment.status in _ACTIVE_VALUES]
        if not awaiting:
            raise ValidationError("no upcoming payments to stop", details={"loan_id": str(loan_id)})

        note = f"Payment stopped on {date.today().isoformat()}"
        for payment in awaiting:
            payment.status = PaymentStatus.CANCELLED.value
            payment.notes = f"{payment.notes}\n{note}" if payment.notes else note
            db.add(payment)
        await db.flush()
        queued = (
            await outbox.enqueue(
                db,
                outbox.TOPIC_PROCESSOR_RESYNC,
                {"loan_id": str(loan_id), "reason": "Payments stopped"},
            )
            is not None
        )

    ledger_logger.info("Stopped %d upcoming payments", len(awaiting), extra={"loan_id": str(loan_id)})
    return ScheduleModification(
        action="stop",
        remaining_balance=round_currency(_as_decimal(loan.remaining_balance)),
        cancelled=len(awaiting),
        side_effects_queued=queued,
    )


async def modify_schedule(
    db: AsyncSession,
    loan_id: UUID,
    *,
    payment_frequency: PaymentFrequency | str | None,
    number_of_payments: int | None,
    start_date: date | None,
    payment_amount=None,
) -> ScheduleModification:
    """Replace the open installments with a fixed-term schedule over the current balance.

    Installments that were collected, failed or booked by hand keep their rows;
    the new schedule is numbered after the last settled installment. When the
    caller sends ``payment_amount`` it must match the level payment to the cent.
    """
    set_loan_id(str(loan_id))
    missing = [
        name
        for name, value in (
            ("payment_frequency", payment_frequency),
            ("number_of_payments", number_of_payments),
            ("start_date", start_date),
        )
        if value is None
    ]
    if missing:
        raise ValidationError("missing schedule modification fields", details={"missing": missing})

    async with _ledger_write(db, loan_id, "modify payment schedule"):
        loan = await get_loan(db, loan_id)
        balance = round_currency(_as_decimal(loan.remaining_balance))
        if balance <= 0:
            raise ValidationError("loan has no remaining balance to reschedule", details={"loan_id": str(loan_id)})

        frequency = PaymentFrequency(payment_frequency)
        rate = loan_interest_rate(loan)
        level_payment = payment_for_term(balance, frequency, rate, number_of_payments)
        if payment_amount is not None:
            provided = round_currency(_as_decimal(payment_amount))
            if abs(provided - level_payment) > PAYMENT_AMOUNT_TOLERANCE:
                raise ValidationError(
                    "payment amount does not match the calculated level payment",
                    details={"calculated_amount": str(level_payment), "provided_amount": str(provided)},
                )

        payments = await list_payments_for_loan(db, loan_id)
        offset = max(
            (payment.payment_number or 0 for payment in payments if payment.status in _SETTLED_VALUES),
            default=0,
        )
        breakdown = [
            replace(entry, payment_number=offset + entry.payment_number)
            for entry in amortize_term(balance, frequency, rate, start_date, number_of_payments)
        ]
        counts = await apply_reconciliation(db, loan.id, reconcile(payments, breakdown))
        queued = (
            await outbox.enqueue(
                db,
                outbox.TOPIC_PROCESSOR_RESYNC,
                {
                    "loan_id": str(loan_id),
                    "reason": (
                        f"Payment schedule modified: {number_of_payments} {frequency.value} payments "
                        f"of {level_payment} from {start_date.isoformat()}"
                    ),
                },
            )
            is not None
        )

    ledger_logger.info(
        "Payment schedule modified",
        extra={
            "loan_id": str(loan_id),
            "payment_amount": str(level_payment),
            "frequency": frequency.value,
            "number_of_payments": number_of_payments,
        },
    )
    return ScheduleModification(
        action="modify",
        remaining_balance=balance,
        payment_amount=level_payment,
        payment_frequency=frequency,
        number_of_payments=number_of_payments,
        schedule=counts,
        side_effects_queued=queued,
    )
