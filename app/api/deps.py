import secrets

from fastapi import Header, HTTPException, status

from app.core.settings import settings


def _matches(provided: str | None, expected: str | None) -> bool:
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_admin_api_key(
    api_key: str | None = Header(default=None, alias="X-Admin-Api-Key"),
) -> None:
    if not _matches(api_key, settings.admin_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "unauthorized", "message": "Invalid or missing admin API key", "details": {}},
        )


async def require_webhook_secret(
    secret: str | None = Header(default=None, alias="X-Webhook-Secret"),
) -> None:
    if not _matches(secret, settings.webhook_secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "unauthorized", "message": "Invalid webhook secret", "details": {}},
        )
