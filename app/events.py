import logging

from fastapi import FastAPI

from app.core.settings import settings
from app.db.session import engine
from app.utils.redis_client import close_redis_client

logger = logging.getLogger(__name__)


def register_event_handlers(app: FastAPI) -> None:
    @app.on_event("startup")
    async def on_startup() -> None:
        logger.info(
            "Application startup",
            extra={
                "environment": settings.environment,
                "default_frequency": settings.default_payment_frequency,
                "max_periods": settings.recalculation_max_periods,
                "outbox_max_attempts": settings.outbox_max_attempts,
                "processor_configured": bool(settings.payment_processor_api_key),
                "email_configured": bool(settings.email_api_url and settings.email_api_key),
            },
        )

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        logger.info("Application shutdown")
        await close_redis_client()
        await engine.dispose()
