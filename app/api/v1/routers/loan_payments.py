from __future__ import annotations

from dataclasses import asdict
from datetime import date
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import deps
from app.core.context import set_loan_id
from app.core.settings import settings
from app.db.session import get_db
from app.schemas.loan import (
    LoanPaymentDTO,
    LoanPaymentListResponse,
    LoanPaymentStatusSummary,
    PaymentStatus,
    PaymentStatusUpdateRequest,
    PaymentStatusUpdateResponse,
    RecalculationPreviewRequest,
    RecalculationPreviewResponse,
    ReconciliationPlanDTO,
    ScheduleEntryDTO,
    ScheduleUpdateDTO,
    SimulateFailedPaymentRequest,
)
from app.services import amortization, loan_payment_status, loan_payments, outbox, payment_schedule
from app.services.loan_payment_status import PaymentStatusUpdateResult


router = APIRouter(
    prefix="/loans",
    tags=["loan-payments"],
    dependencies=[Depends(deps.require_admin_api_key)],
)

_RESULT_STATUS_CODES = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "validation_error": status.HTTP_400_BAD_REQUEST,
    "persistence_error": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _raise_for_result(result: PaymentStatusUpdateResult) -> None:
    if result.success:
        return
    raise HTTPException(
        status_code=_RESULT_STATUS_CODES.get(result.code or "", status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail={
            "code": result.code or "persistence_error",
            "message": result.error or "Payment status update failed",
            "details": result.details,
        },
    )


def _update_response(loan_id: UUID, result: PaymentStatusUpdateResult) -> PaymentStatusUpdateResponse:
    return PaymentStatusUpdateResponse(
        loan_id=loan_id,
        loan_remaining_balance=result.loan_remaining_balance or Decimal("0"),
        payment=LoanPaymentDTO.model_validate(result.payment),
    )


@router.get("/{loan_id}/payments", response_model=LoanPaymentListResponse)
async def list_loan_payments(
    loan_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> LoanPaymentListResponse:
    set_loan_id(str(loan_id))
    loan = await loan_payments.get_loan(db, loan_id)
    payments = await loan_payments.list_payments_for_loan(db, loan_id)
    snapshot = loan_payment_status.summarize_payments(payments, date.today())
    return LoanPaymentListResponse(
        loan_id=loan.id,
        remaining_balance=loan.remaining_balance,
        total=len(payments),
        items=[LoanPaymentDTO.model_validate(payment) for payment in payments],
        summary=LoanPaymentStatusSummary(**asdict(snapshot)),
    )


@router.patch("/{loan_id}/payments/{payment_id}/status", response_model=PaymentStatusUpdateResponse)
async def update_payment_status(
    loan_id: UUID,
    payment_id: UUID,
    payload: PaymentStatusUpdateRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
) -> PaymentStatusUpdateResponse:
    result = await loan_payment_status.update_payment_status_and_effects(
        db,
        loan_id,
        payment_id,
        payload.status,
        payment_frequency_override=payload.payment_frequency,
        failed_payment_fee_override=payload.failed_payment_fee,
    )
    _raise_for_result(result)
    if result.side_effects_queued:
        background_tasks.add_task(outbox.drain_outbox)
    return _update_response(loan_id, result)


@router.post("/{loan_id}/payments/{payment_id}/simulate-failed", response_model=PaymentStatusUpdateResponse)
async def simulate_failed_payment(
    loan_id: UUID,
    payment_id: UUID,
    background_tasks: BackgroundTasks,
    payload: SimulateFailedPaymentRequest | None = None,
    db: AsyncSession = Depends(get_db),
) -> PaymentStatusUpdateResponse:
    payment = await loan_payments.get_payment(db, loan_id, payment_id)
    if payment.status != PaymentStatus.PENDING.value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "invalid_payment_status",
                "message": "Only pending payments can be simulated as failed",
                "details": {"status": payment.status},
            },
        )
    payload = payload or SimulateFailedPaymentRequest()
    result = await loan_payment_status.update_payment_status_and_effects(
        db,
        loan_id,
        payment_id,
        PaymentStatus.FAILED,
        payment_frequency_override=payload.payment_frequency,
        failed_payment_fee_override=payload.failed_payment_fee,
    )
    _raise_for_result(result)
    if result.side_effects_queued:
        background_tasks.add_task(outbox.drain_outbox)
    return _update_response(loan_id, result)


@router.post("/{loan_id}/schedule/recalculate/preview", response_model=RecalculationPreviewResponse)
async def preview_schedule_recalculation(
    loan_id: UUID,
    payload: RecalculationPreviewRequest,
    db: AsyncSession = Depends(get_db),
) -> RecalculationPreviewResponse:
    set_loan_id(str(loan_id))
    loan = await loan_payments.get_loan(db, loan_id)
    terms = await loan_payments.latest_contract_terms(db, loan_id)
    payments = await loan_payments.list_payments_for_loan(db, loan_id)

    remaining_balance = (
        payload.remaining_balance if payload.remaining_balance is not None else loan.remaining_balance
    )
    frequency = (
        payload.payment_frequency
        or (terms.payment_frequency if terms is not None else None)
        or settings.default_payment_frequency
    )
    payment_amount = payload.payment_amount or (terms.payment_amount if terms is not None else None)
    if payment_amount is None:
        upcoming = [item for item in payments if item.status == PaymentStatus.PENDING.value and item.amount]
        payment_amount = upcoming[0].amount if upcoming else None
    if not payment_amount:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "missing_payment_amount",
                "message": "payment_amount is required when the loan has no contract amount",
                "details": {},
            },
        )
    annual_rate = payload.annual_interest_rate
    if annual_rate is None:
        annual_rate = (
            loan.interest_rate if loan.interest_rate is not None else settings.default_interest_rate_percent
        )

    entries = amortization.recalculate(
        remaining_balance,
        payment_amount,
        frequency,
        annual_rate,
        payload.first_due_date,
        payload.max_periods or settings.recalculation_max_periods,
    )
    if entries:
        plan = payment_schedule.reconcile(payments, entries, cutover_date=payload.first_due_date)
        plan_dto = ReconciliationPlanDTO(
            updates=[
                ScheduleUpdateDTO(payment_id=item.payment.id, entry=ScheduleEntryDTO.model_validate(item.entry))
                for item in plan.to_update
            ],
            inserts=[ScheduleEntryDTO.model_validate(entry) for entry in plan.to_insert],
            deletes=[payment.id for payment in plan.to_delete],
        )
    else:
        plan_dto = ReconciliationPlanDTO(updates=[], inserts=[], deletes=[])

    return RecalculationPreviewResponse(
        loan_id=loan.id,
        remaining_balance=amortization.round_currency(remaining_balance),
        payment_amount=amortization.round_currency(payment_amount),
        payment_frequency=frequency,
        annual_interest_rate=annual_rate,
        first_due_date=payload.first_due_date,
        entries=[ScheduleEntryDTO.model_validate(entry) for entry in entries],
        plan=plan_dto,
    )
