from __future__ import annotations

import calendar
from dataclasses import dataclass, replace
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP

from app.core.errors import ValidationError
from app.schemas.common import PaymentFrequency


TWOPLACES = Decimal("0.01")
ZERO = Decimal("0.00")

PERIODS_PER_YEAR: dict[PaymentFrequency, int] = {
    PaymentFrequency.WEEKLY: 52,
    PaymentFrequency.BI_WEEKLY: 26,
    PaymentFrequency.TWICE_MONTHLY: 24,
    PaymentFrequency.MONTHLY: 12,
}

_DAYS_BETWEEN: dict[PaymentFrequency, int] = {
    PaymentFrequency.WEEKLY: 7,
    PaymentFrequency.BI_WEEKLY: 14,
    PaymentFrequency.TWICE_MONTHLY: 15,
}


@dataclass(frozen=True)
class BreakdownEntry:
    payment_number: int
    due_date: date
    amount: Decimal
    interest: Decimal
    principal: Decimal
    remaining_balance: Decimal


def _as_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_currency(value) -> Decimal:
    return _as_decimal(value).quantize(TWOPLACES, rounding=ROUND_HALF_UP)


def _add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def advance_due_date(start: date, frequency: PaymentFrequency | str, steps: int = 1) -> date:
    """Return the due date ``steps`` periods after ``start``.

    Monthly steps are always counted from ``start`` so a schedule anchored on
    the 31st lands on the last day of shorter months without drifting.
    """
    frequency = PaymentFrequency(frequency)
    if frequency == PaymentFrequency.MONTHLY:
        return _add_months(start, steps)
    return start + timedelta(days=_DAYS_BETWEEN[frequency] * steps)


def periodic_rate(annual_interest_rate, frequency: PaymentFrequency | str) -> Decimal:
    frequency = PaymentFrequency(frequency)
    return _as_decimal(annual_interest_rate) / Decimal("100") / Decimal(PERIODS_PER_YEAR[frequency])


def recalculate(
    remaining_balance,
    payment_amount,
    frequency: PaymentFrequency | str,
    annual_interest_rate,
    first_due_date: date,
    max_periods: int,
) -> list[BreakdownEntry]:
    """Amortize ``remaining_balance`` with a fixed payment until it reaches zero.

    Each period charges interest on the running balance at the periodic rate and
    applies the rest of the payment to principal. The last period settles the
    residual balance, so its amount may be smaller than ``payment_amount``.
    The loop stops after ``max_periods`` entries when the payment never
    amortizes the balance. A payment smaller than the period's interest
    applies nothing to principal rather than letting the balance grow, so
    such a period has ``interest > amount`` and ``principal == 0``.
    """
    balance = round_currency(remaining_balance)
    payment = round_currency(payment_amount)
    rate_percent = _as_decimal(annual_interest_rate)

    if balance < 0:
        raise ValidationError("remaining_balance must be >= 0")
    if payment <= 0:
        raise ValidationError("payment_amount must be > 0")
    if rate_percent < 0:
        raise ValidationError("annual_interest_rate must be >= 0")
    if max_periods < 1:
        raise ValidationError("max_periods must be >= 1")

    try:
        frequency = PaymentFrequency(frequency)
    except ValueError as exc:
        raise ValidationError("unsupported payment frequency", details={"frequency": str(frequency)}) from exc

    rate = periodic_rate(rate_percent, frequency)
    entries: list[BreakdownEntry] = []

    for index in range(max_periods):
        if balance <= 0:
            break
        interest = round_currency(balance * rate)
        if balance + interest <= payment:
            principal = balance
            amount = round_currency(principal + interest)
        else:
            principal = max(ZERO, round_currency(payment - interest))
            amount = payment
        balance = max(ZERO, round_currency(balance - principal))
        entries.append(
            BreakdownEntry(
                payment_number=index + 1,
                due_date=advance_due_date(first_due_date, frequency, index),
                amount=amount,
                interest=interest,
                principal=principal,
                remaining_balance=balance,
            )
        )

    return entries


def payment_for_term(
    principal,
    frequency: PaymentFrequency | str,
    annual_interest_rate,
    number_of_payments: int,
) -> Decimal:
    """Level payment that amortizes ``principal`` over ``number_of_payments`` periods."""
    balance = round_currency(principal)
    if balance <= 0:
        raise ValidationError("principal must be > 0")
    if number_of_payments < 1:
        raise ValidationError("number_of_payments must be >= 1")
    try:
        rate = periodic_rate(annual_interest_rate, frequency)
    except ValueError as exc:
        raise ValidationError("unsupported payment frequency", details={"frequency": str(frequency)}) from exc
    if rate == 0:
        return round_currency(balance / number_of_payments)
    growth = (1 + rate) ** number_of_payments
    return round_currency(balance * rate * growth / (growth - 1))


def amortize_term(
    principal,
    frequency: PaymentFrequency | str,
    annual_interest_rate,
    first_due_date: date,
    number_of_payments: int,
) -> list[BreakdownEntry]:
    """Fixed-term schedule: level payments, the last one settling any cent residual."""
    payment = payment_for_term(principal, frequency, annual_interest_rate, number_of_payments)
    entries = recalculate(principal, payment, frequency, annual_interest_rate, first_due_date, number_of_payments)
    if entries and entries[-1].remaining_balance > 0:
        last = entries[-1]
        residual = last.remaining_balance
        entries[-1] = replace(
            last,
            amount=round_currency(last.amount + residual),
            principal=round_currency(last.principal + residual),
            remaining_balance=ZERO,
        )
    return entries
