from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import SideEffectError
from app.core.settings import settings
from app.db.session import AsyncSessionLocal
from app.models.outbox_message import OutboxMessage
from app.services import notifications, payment_processor


logger = logging.getLogger(__name__)

TOPIC_PROCESSOR_RESYNC = "payment_processor.resync"
TOPIC_PAYMENT_FAILED_NOTIFICATION = "notification.payment_failed"

OutboxHandler = Callable[[AsyncSession, dict], Awaitable[None]]


@dataclass(frozen=True)
class DispatchSummary:
    delivered: int = 0
    retried: int = 0
    failed: int = 0


async def _handle_processor_resync(db: AsyncSession, payload: dict) -> None:
    result = await payment_processor.resync_loan_transactions(
        db,
        UUID(payload["loan_id"]),
        payload.get("reason") or "Payment schedule recalculated",
    )
    if result.errors:
        # partial errors keep the rows already created at the processor
        logger.warning(
            "Payment processor resync completed with errors",
            extra={"loan_id": payload["loan_id"], "errors": result.errors},
        )


async def _handle_payment_failed_notification(db: AsyncSession, payload: dict) -> None:
    await notifications.send_payment_failed_email(
        db,
        UUID(payload["loan_id"]),
        Decimal(str(payload.get("payment_amount") or "0")),
    )


HANDLERS: dict[str, OutboxHandler] = {
    TOPIC_PROCESSOR_RESYNC: _handle_processor_resync,
    TOPIC_PAYMENT_FAILED_NOTIFICATION: _handle_payment_failed_notification,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def enqueue(db: AsyncSession, topic: str, payload: dict[str, Any]) -> OutboxMessage | None:
    """Queue a side effect in the caller's transaction.

    The message only becomes visible once the caller commits. Failures are
    logged and swallowed: a side effect must never block a ledger write.
    """
    try:
        message = OutboxMessage(
            topic=topic,
            payload=json.loads(json.dumps(payload, default=str)),
            status="pending",
            attempts=0,
            available_at=_utcnow(),
        )
        db.add(message)
    except (TypeError, ValueError, SQLAlchemyError) as exc:
        error = SideEffectError("failed to enqueue side effect", details={"topic": topic})
        logger.warning("%s: %s", error, exc, extra={"topic": topic})
        return None
    return message


async def _deliver(db: AsyncSession, message: OutboxMessage) -> None:
    handler = HANDLERS.get(message.topic)
    if handler is None:
        raise SideEffectError("no handler registered for topic", details={"topic": message.topic})
    async with db.begin_nested():
        await handler(db, dict(message.payload or {}))


async def dispatch_pending(db: AsyncSession, *, limit: int | None = None) -> DispatchSummary:
    """Deliver due outbox messages and record the outcome of each one.

    Each message runs inside its own savepoint so a failing handler only
    discards its own writes. Failed deliveries back off linearly and become
    ``failed`` after ``OUTBOX_MAX_ATTEMPTS``.
    """
    now = _utcnow()
    stmt = (
        select(OutboxMessage)
        .where(OutboxMessage.status == "pending", OutboxMessage.available_at <= now)
        .order_by(OutboxMessage.created_at.asc())
        .limit(limit or settings.outbox_batch_size)
        .with_for_update(skip_locked=True)
    )
    messages = list((await db.execute(stmt)).scalars().all())

    delivered = retried = failed = 0
    for message in messages:
        try:
            await _deliver(db, message)
        except Exception as exc:  # noqa: BLE001 - handler failures are recorded, not raised
            message.attempts = (message.attempts or 0) + 1
            message.last_error = str(exc)[:2000]
            if message.attempts >= settings.outbox_max_attempts:
                message.status = "failed"
                failed += 1
                logger.exception(
                    "Outbox message failed permanently",
                    extra={"topic": message.topic, "message_id": str(message.id), "attempts": message.attempts},
                )
            else:
                message.available_at = _utcnow() + timedelta(
                    seconds=settings.outbox_retry_delay_seconds * message.attempts
                )
                retried += 1
                logger.warning(
                    "Outbox delivery failed, will retry: %s",
                    exc,
                    extra={"topic": message.topic, "message_id": str(message.id), "attempts": message.attempts},
                )
        else:
            message.status = "delivered"
            message.delivered_at = _utcnow()
            message.last_error = None
            delivered += 1
        db.add(message)

    await db.commit()
    summary = DispatchSummary(delivered=delivered, retried=retried, failed=failed)
    if messages:
        logger.info(
            "Outbox dispatch finished",
            extra={"delivered": delivered, "retried": retried, "failed": failed},
        )
    return summary


async def drain_outbox(limit: int | None = None) -> DispatchSummary:
    """Dispatch pending messages in a dedicated session.

    Used as a background task after a status transition commits and by the
    ``scripts/drain_outbox.py`` cron entry point.
    """
    async with AsyncSessionLocal() as db:
        try:
            return await dispatch_pending(db, limit=limit)
        except SQLAlchemyError:
            await db.rollback()
            logger.exception("Outbox drain failed")
            return DispatchSummary()
