from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
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
from app.schemas.loan import ACTIVE_STATUSES, SUCCESS_STATUSES, PaymentStatus
from app.services.failed_payments import apply_failed_payment
from app.services.loan_payments import get_loan, get_payment, latest_contract_terms, list_payments_for_loan


logger = logging.getLogger(__name__)
ledger_logger = get_ledger_logger()

_ACTIVE_VALUES = frozenset(status.value for status in ACTIVE_STATUSES)
_SUCCESS_VALUES = frozenset(status.value for status in SUCCESS_STATUSES)


@dataclass(frozen=True)
class LoanPaymentStatus:
    next_payment_id: UUID | None
    next_payment_date: date | None
    next_payment_amount: Decimal | None
    missed_payment_count: int
    missed_payment_amount_total: Decimal
    missed_payment_dates: list[date]
    failed_payment_count: int
    paid_total: Decimal
    scheduled_remaining_total: Decimal


@dataclass(frozen=True)
class PaymentStatusUpdateResult:
    success: bool
    error: str | None = None
    code: str | None = None
    applied: bool = False
    side_effects_queued: bool = False
    payment: LoanPayment | None = None
    loan_remaining_balance: Decimal | None = None
    details: dict = field(default_factory=dict)


def _as_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def summarize_payments(payments: list[LoanPayment], as_of_date: date) -> LoanPaymentStatus:
    ordered = sorted(payments, key=lambda item: item.payment_date)

    next_payment = None
    missed_dates: list[date] = []
    missed_total = Decimal("0")
    failed_count = 0
    paid_total = Decimal("0")
    scheduled_total = Decimal("0")

    for payment in ordered:
        if payment.status == PaymentStatus.FAILED.value:
            failed_count += 1
        elif payment.status in _SUCCESS_VALUES:
            paid_total += _as_decimal(payment.amount)
        elif payment.status in _ACTIVE_VALUES:
            scheduled_total += _as_decimal(payment.amount)
            if payment.payment_date < as_of_date:
                missed_dates.append(payment.payment_date)
                missed_total += _as_decimal(payment.amount)
            elif next_payment is None:
                next_payment = payment

    return LoanPaymentStatus(
        next_payment_id=next_payment.id if next_payment is not None else None,
        next_payment_date=next_payment.payment_date if next_payment is not None else None,
        next_payment_amount=_as_decimal(next_payment.amount) if next_payment is not None else None,
        missed_payment_count=len(missed_dates),
        missed_payment_amount_total=missed_total,
        missed_payment_dates=missed_dates,
        failed_payment_count=failed_count,
        paid_total=paid_total,
        scheduled_remaining_total=scheduled_total,
    )


def _apply_success(loan: Loan, payment: LoanPayment) -> None:
    if payment.remaining_balance is not None:
        loan.remaining_balance = _as_decimal(payment.remaining_balance)
    else:
        loan.remaining_balance = max(
            Decimal("0.00"),
            _as_decimal(loan.remaining_balance) - _as_decimal(payment.amount),
        )


def _first_positive(*values) -> Decimal | None:
    for value in values:
        if value is not None and _as_decimal(value) > 0:
            return _as_decimal(value)
    return None


async def _apply_failure(
    db: AsyncSession,
    loan: Loan,
    payment: LoanPayment,
    *,
    payment_frequency_override: PaymentFrequency | str | None,
    failed_payment_fee_override,
) -> None:
    terms = await latest_contract_terms(db, loan.id)
    contract_frequency = terms.payment_frequency if terms is not None else None
    contract_amount = terms.payment_amount if terms is not None else None
    contract_fee = terms.fees.failed_payment_fee if terms is not None else None

    frequency = PaymentFrequency(
        contract_frequency or payment_frequency_override or settings.default_payment_frequency
    )
    payment_amount = _first_positive(contract_amount, payment.amount)
    if payment_amount is None:
        raise ValidationError(
            "no payment amount available for recalculation",
            details={"loan_id": str(loan.id), "payment_id": str(payment.id)},
        )
    # a zero fee is treated as unset
    fee = _first_positive(failed_payment_fee_override, contract_fee) or settings.default_failed_payment_fee

    payments = await list_payments_for_loan(db, loan.id)
    await apply_failed_payment(
        db,
        loan,
        payment,
        payments,
        frequency=frequency,
        payment_amount=payment_amount,
        failed_payment_fee=fee,
    )


async def update_payment_status_and_effects(
    db: AsyncSession,
    loan_id: UUID,
    payment_id: UUID,
    new_status: PaymentStatus | str,
    *,
    payment_frequency_override: PaymentFrequency | str | None = None,
    failed_payment_fee_override=None,
) -> PaymentStatusUpdateResult:
    """Move an installment to ``new_status`` and apply its ledger effects.

    Repeating the current status is a no-op success, which absorbs duplicate
    webhook deliveries. Only installments still awaiting collection
    (pending, scheduled, authorized) can change status. The status write and
    every ledger effect commit together; on any error the session is rolled
    back and the failure is returned, never raised.
    """
    set_loan_id(str(loan_id))
    try:
        try:
            target = PaymentStatus(new_status)
        except ValueError as exc:
            raise ValidationError("unknown payment status", details={"status": str(new_status)}) from exc

        loan = await get_loan(db, loan_id)
        payment = await get_payment(db, loan_id, payment_id)

        if payment.status == target.value:
            return PaymentStatusUpdateResult(
                success=True,
                applied=False,
                payment=payment,
                loan_remaining_balance=_as_decimal(loan.remaining_balance),
            )

        previous_status = payment.status
        if previous_status not in _ACTIVE_VALUES:
            raise ValidationError(
                "invalid status transition",
                details={"from": previous_status, "to": target.value},
            )

        payment.status = target.value
        db.add(payment)

        side_effects_queued = False
        if target in SUCCESS_STATUSES:
            _apply_success(loan, payment)
            db.add(loan)
        elif target == PaymentStatus.FAILED:
            await _apply_failure(
                db,
                loan,
                payment,
                payment_frequency_override=payment_frequency_override,
                failed_payment_fee_override=failed_payment_fee_override,
            )
            side_effects_queued = True

        try:
            await db.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                "failed to commit status transition",
                details={"loan_id": str(loan_id), "payment_id": str(payment_id)},
            ) from exc
    except LedgerError as exc:
        await db.rollback()
        logger.warning(
            "Payment status transition rejected: %s",
            exc.message,
            extra={"loan_id": str(loan_id), "payment_id": str(payment_id), "code": exc.code},
        )
        return PaymentStatusUpdateResult(success=False, error=exc.message, code=exc.code, details=exc.details)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception(
            "Payment status transition failed",
            extra={"loan_id": str(loan_id), "payment_id": str(payment_id)},
        )
        return PaymentStatusUpdateResult(
            success=False,
            error=f"database error: {exc.__class__.__name__}",
            code=PersistenceError.code,
        )

    ledger_logger.info(
        "Payment status changed %s -> %s",
        previous_status,
        target.value,
        extra={"loan_id": str(loan_id), "payment_id": str(payment_id)},
    )
    return PaymentStatusUpdateResult(
        success=True,
        applied=True,
        side_effects_queued=side_effects_queued,
        payment=payment,
        loan_remaining_balance=_as_decimal(loan.remaining_balance),
    )
