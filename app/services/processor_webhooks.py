from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, PersistenceError, ValidationError
from app.models.payment_transaction import PaymentTransaction
from app.schemas.loan import ProcessorWebhookPayload
from app.services.loan_payment_status import PaymentStatusUpdateResult, update_payment_status_and_effects
from app.services.payment_processor import map_processor_status


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookOutcome:
    transaction_id: str
    transaction_status: str | None
    payment_status: str | None
    applied: bool
    gate_result: PaymentStatusUpdateResult | None = None


async def apply_processor_webhook(db: AsyncSession, payload: ProcessorWebhookPayload) -> WebhookOutcome:
    """Mirror a processor status callback and forward terminal outcomes to the ledger.

    The transaction mirror is committed on its own before the installment
    transition runs, so a rejected transition never loses the processor's
    reported state.
    """
    transaction_status, payment_status = map_processor_status(payload.status)
    if transaction_status is None:
        raise ValidationError("unsupported processor status", details={"status": payload.status})

    stmt = select(PaymentTransaction).where(
        PaymentTransaction.external_transaction_id == payload.transaction_id
    )
    transaction = (await db.execute(stmt)).scalar_one_or_none()
    if transaction is None:
        raise NotFoundError("transaction not found", details={"transaction_id": payload.transaction_id})

    provider_data = dict(transaction.provider_data or {})
    provider_data["last_webhook"] = {
        "status": payload.status,
        "received_at": datetime.now(timezone.utc).isoformat(),
        "failure_reason": payload.failure_reason,
    }
    transaction.provider_data = provider_data
    transaction.status = transaction_status
    db.add(transaction)
    loan_id = transaction.loan_id
    loan_payment_id = transaction.loan_payment_id
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError(
            "failed to record processor status",
            details={"transaction_id": payload.transaction_id},
        ) from exc

    if payment_status is None or loan_payment_id is None:
        return WebhookOutcome(
            transaction_id=payload.transaction_id,
            transaction_status=transaction_status,
            payment_status=None,
            applied=False,
        )

    result = await update_payment_status_and_effects(db, loan_id, loan_payment_id, payment_status)
    if not result.success:
        logger.warning(
            "Processor webhook did not change installment: %s",
            result.error,
            extra={"transaction_id": payload.transaction_id, "code": result.code},
        )
    return WebhookOutcome(
        transaction_id=payload.transaction_id,
        transaction_status=transaction_status,
        payment_status=payment_status,
        applied=result.success and result.applied,
        gate_result=result,
    )
