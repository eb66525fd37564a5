import hashlib

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from app.core.settings import settings


def rate_limit_key(request: Request) -> str:
    """Bucket admin callers by a digest of their API key, everyone else by client address."""
    api_key = request.headers.get("x-admin-api-key")
    if api_key:
        return "admin:" + hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]
    return get_remote_address(request)


limiter = Limiter(
    key_func=rate_limit_key,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
    storage_uri=settings.redis_url,
    key_prefix="ledger",
)

__all__ = ["limiter", "rate_limit_key"]
