from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import deps
from app.db.session import get_db
from app.schemas.loan import (
    BalanceAdjustmentRequest,
    BalanceAdjustmentResponse,
    LoanModificationRequest,
    LoanModificationResponse,
    LoanPaymentDTO,
    ScheduleCountsDTO,
)
from app.services import loan_adjustments, outbox
from app.services.loan_adjustments import BalanceAdjustment


router = APIRouter(
    prefix="/loans",
    tags=["loan-adjustments"],
    dependencies=[Depends(deps.require_admin_api_key)],
)


def _adjustment_response(loan_id: UUID, outcome: BalanceAdjustment) -> BalanceAdjustmentResponse:
    return BalanceAdjustmentResponse(
        loan_id=loan_id,
        remaining_balance=outcome.remaining_balance,
        loan_status=outcome.loan_status,
        payment=LoanPaymentDTO.model_validate(outcome.payment),
        schedule=ScheduleCountsDTO.model_validate(outcome.schedule) if outcome.schedule is not None else None,
    )


@router.post("/{loan_id}/payments/manual", response_model=BalanceAdjustmentResponse, status_code=201)
async def create_manual_payment(
    loan_id: UUID,
    payload: BalanceAdjustmentRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
) -> BalanceAdjustmentResponse:
    outcome = await loan_adjustments.record_manual_payment(
        db,
        loan_id,
        payment_date=payload.payment_date,
        amount=payload.amount,
        notes=payload.notes,
        mark_loan_as_paid=payload.mark_loan_as_paid,
    )
    if outcome.side_effects_queued:
        background_tasks.add_task(outbox.drain_outbox)
    return _adjustment_response(loan_id, outcome)


@router.post("/{loan_id}/payments/rebate", response_model=BalanceAdjustmentResponse, status_code=201)
async def create_rebate(
    loan_id: UUID,
    payload: BalanceAdjustmentRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
) -> BalanceAdjustmentResponse:
    outcome = await loan_adjustments.record_rebate(
        db,
        loan_id,
        payment_date=payload.payment_date,
        amount=payload.amount,
        notes=payload.notes,
        mark_loan_as_paid=payload.mark_loan_as_paid,
    )
    if outcome.side_effects_queued:
        background_tasks.add_task(outbox.drain_outbox)
    return _adjustment_response(loan_id, outcome)


@router.post("/{loan_id}/modify", response_model=LoanModificationResponse)
async def modify_loan(
    loan_id: UUID,
    payload: LoanModificationRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
) -> LoanModificationResponse:
    if payload.action == "stop":
        outcome = await loan_adjustments.stop_payments(db, loan_id)
    else:
        outcome = await loan_adjustments.modify_schedule(
            db,
            loan_id,
            payment_frequency=payload.payment_frequency,
            number_of_payments=payload.number_of_payments,
            start_date=payload.start_date,
            payment_amount=payload.payment_amount,
        )
    if outcome.side_effects_queued:
        background_tasks.add_task(outbox.drain_outbox)
    return LoanModificationResponse(
        loan_id=loan_id,
        action=outcome.action,
        remaining_balance=outcome.remaining_balance,
        payment_amount=outcome.payment_amount,
        payment_frequency=outcome.payment_frequency,
        number_of_payments=outcome.number_of_payments,
        cancelled_payments=outcome.cancelled,
        schedule=ScheduleCountsDTO.model_validate(outcome.schedule) if outcome.schedule is not None else None,
    )
