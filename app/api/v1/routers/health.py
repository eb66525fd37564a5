from fastapi import APIRouter

from app.core import health
from app.core.limiter import limiter

router = APIRouter(tags=["health"])


@router.get("/health/live", summary="Process liveness")
@limiter.exempt
async def health_live() -> dict:
    return await health.live_payload()


@router.get("/health/ready", summary="Database and Redis readiness")
@limiter.exempt
async def health_ready() -> dict:
    return await health.ready_payload()


@router.get("/health", summary="Alias of /health/ready", include_in_schema=False)
@limiter.exempt
async def health_alias() -> dict:
    return await health.ready_payload()


@router.get("/status/summary", tags=["status"], summary="Readiness, version and outbox backlog")
@limiter.exempt
async def status_summary() -> dict:
    return await health.status_summary_payload()


@router.get("/status/outbox", tags=["status"], summary="Pending and failed side-effect messages")
@limiter.exempt
async def outbox_status() -> dict:
    return await health.outbox_payload()
