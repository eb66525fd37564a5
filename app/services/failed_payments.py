from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, PersistenceError
from app.core.settings import settings
from app.models.loan import Loan
from app.models.loan_payment import LoanPayment
from app.schemas.common import PaymentFrequency
from app.schemas.loan import PaymentStatus
from app.services import outbox
from app.services.amortization import advance_due_date, recalculate, round_currency
from app.services.payment_schedule import ReconciliationCounts, apply_reconciliation, reconcile


logger = logging.getLogger(__name__)

FAILED_PAYMENT_ERROR_CODE = "NSF"


@dataclass(frozen=True)
class FailedPaymentOutcome:
    rolled_amount: Decimal
    new_principal: Decimal
    next_due_date: date
    reconciliation: ReconciliationCounts


def _as_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def loan_interest_rate(loan: Loan) -> Decimal:
    if loan.interest_rate is None:
        return settings.default_interest_rate_percent
    return _as_decimal(loan.interest_rate)


def _next_due_date(
    payments: list[LoanPayment],
    failed_index: int,
    failed: LoanPayment,
    frequency: PaymentFrequency,
) -> date:
    for candidate in payments[failed_index + 1:]:
        if candidate.status == PaymentStatus.PENDING.value and candidate.payment_date > failed.payment_date:
            return candidate.payment_date
    return advance_due_date(failed.payment_date, frequency)


async def apply_failed_payment(
    db: AsyncSession,
    loan: Loan,
    payment: LoanPayment,
    payments: list[LoanPayment],
    *,
    frequency: PaymentFrequency | str,
    payment_amount,
    failed_payment_fee,
) -> FailedPaymentOutcome:
    """Roll a failed installment's interest and fee into principal and rebuild the tail.

    ``payments`` is every installment of the loan ordered by due date. All
    writes go into the caller's session; committing or rolling back is the
    caller's decision, so a failure here never leaves a half-applied ledger.
    Processor resync and borrower notification are queued in the outbox and
    delivered after commit.
    """
    frequency = PaymentFrequency(frequency)

    failed_index = next((index for index, item in enumerate(payments) if item.id == payment.id), None)
    if failed_index is None:
        raise NotFoundError(
            "failed payment not found in loan schedule",
            details={"loan_id": str(loan.id), "payment_id": str(payment.id)},
        )

    remaining_before = _as_decimal(loan.remaining_balance)
    if failed_index > 0:
        previous = payments[failed_index - 1]
        if previous.remaining_balance is not None:
            remaining_before = _as_decimal(previous.remaining_balance)

    original_amount = round_currency(_as_decimal(payment.amount))
    failed_interest = round_currency(_as_decimal(payment.interest))
    fee = round_currency(_as_decimal(failed_payment_fee))
    rolled_amount = round_currency(fee + failed_interest)
    new_principal = round_currency(remaining_before + rolled_amount)

    next_due_date = _next_due_date(payments, failed_index, payment, frequency)

    breakdown = recalculate(
        new_principal,
        payment_amount,
        frequency,
        loan_interest_rate(loan),
        next_due_date,
        settings.recalculation_max_periods,
    )
    plan = reconcile(payments, breakdown, cutover_date=next_due_date)
    counts = await apply_reconciliation(db, loan.id, plan)

    payment.status = PaymentStatus.FAILED.value
    payment.amount = Decimal("0.00")
    payment.principal = -rolled_amount
    payment.interest = Decimal("0.00")
    payment.remaining_balance = new_principal
    payment.error_code = FAILED_PAYMENT_ERROR_CODE
    payment.notes = f"Failed payment. Added interest: {failed_interest}, Failed payment fee: {fee}"
    db.add(payment)

    loan.remaining_balance = new_principal
    db.add(loan)

    try:
        await db.flush()
    except SQLAlchemyError as exc:
        raise PersistenceError(
            "failed to record failed payment",
            details={"loan_id": str(loan.id), "payment_id": str(payment.id)},
        ) from exc

    await outbox.enqueue(
        db,
        outbox.TOPIC_PROCESSOR_RESYNC,
        {
            "loan_id": str(loan.id),
            "reason": (
                f"Payment schedule recalculated after failed payment {payment.id}. "
                f"Added interest: {failed_interest}, Failed payment fee: {fee}"
            ),
        },
    )
    await outbox.enqueue(
        db,
        outbox.TOPIC_PAYMENT_FAILED_NOTIFICATION,
        {"loan_id": str(loan.id), "payment_amount": str(original_amount)},
    )

    logger.info(
        "Applied failed payment roll-forward",
        extra={
            "loan_id": str(loan.id),
            "payment_id": str(payment.id),
            "rolled_amount": str(rolled_amount),
            "new_principal": str(new_principal),
            "next_due_date": next_due_date.isoformat(),
        },
    )
    return FailedPaymentOutcome(
        rolled_amount=rolled_amount,
        new_principal=new_principal,
        next_due_date=next_due_date,
        reconciliation=counts,
    )
