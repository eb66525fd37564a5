from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import deps
from app.core.limiter import limiter
from app.db.session import get_db
from app.schemas.loan import ProcessorWebhookPayload, ProcessorWebhookResponse
from app.services import outbox, processor_webhooks


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payment-processor", tags=["payment-processor"])


@router.post(
    "/webhook",
    response_model=ProcessorWebhookResponse,
    dependencies=[Depends(deps.require_webhook_secret)],
    summary="Receive a processor transaction status callback",
)
@limiter.exempt
async def processor_webhook(
    payload: ProcessorWebhookPayload,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
) -> ProcessorWebhookResponse:
    outcome = await processor_webhooks.apply_processor_webhook(db, payload)
    if outcome.gate_result is not None and outcome.gate_result.side_effects_queued:
        background_tasks.add_task(outbox.drain_outbox)
    logger.info(
        "Processor webhook handled",
        extra={
            "transaction_id": outcome.transaction_id,
            "transaction_status": outcome.transaction_status,
            "payment_status": outcome.payment_status,
            "applied": outcome.applied,
        },
    )
    return ProcessorWebhookResponse(
        transaction_id=outcome.transaction_id,
        transaction_status=outcome.transaction_status,
        payment_status=outcome.payment_status,
        applied=outcome.applied,
    )
