from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select, text

from app.core.settings import settings
from app.db.session import AsyncSessionLocal, engine
from app.models.outbox_message import OutboxMessage
from app.utils.redis_client import get_redis_client

APP_VERSION = "0.1.0"


async def _check_db() -> dict[str, str]:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:  # pragma: no cover - exercised in runtime
        return {"status": "error", "error": str(exc)}


async def _check_redis() -> dict[str, str]:
    try:
        await get_redis_client().ping()
        return {"status": "ok"}
    except Exception as exc:
        return {"status": "error", "error": str(exc)}


async def _outbox_backlog() -> dict[str, Any]:
    try:
        async with AsyncSessionLocal() as db:
            rows = (
                await db.execute(
                    select(OutboxMessage.status, func.count(OutboxMessage.id)).group_by(OutboxMessage.status)
                )
            ).all()
    except Exception as exc:  # pragma: no cover - exercised in runtime
        return {"status": "error", "error": str(exc)}
    counts = {status: int(count) for status, count in rows}
    return {
        "status": "ok" if counts.get("failed", 0) == 0 else "degraded",
        "pending": counts.get("pending", 0),
        "failed": counts.get("failed", 0),
    }


def _overall_status(checks: dict[str, dict[str, Any]]) -> tuple[str, bool]:
    ready = all(check.get("status") == "ok" for check in checks.values())
    return ("ok" if ready else "degraded", ready)


async def live_payload() -> dict[str, str]:
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def ready_payload() -> dict[str, Any]:
    checks = {
        "database": await _check_db(),
        "redis": await _check_redis(),
    }
    overall, ready = _overall_status(checks)
    return {
        "status": overall,
        "ready": ready,
        "environment": settings.environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }


async def status_summary_payload() -> dict[str, Any]:
    payload = await ready_payload()
    payload["version"] = APP_VERSION
    payload["outbox"] = await _outbox_backlog()
    return payload


async def outbox_payload() -> dict[str, Any]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "outbox": await _outbox_backlog(),
        "max_attempts": settings.outbox_max_attempts,
    }
