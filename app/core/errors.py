from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base error raised by the payment ledger engine.

    Subclasses carry the machine-readable ``code`` and HTTP status used when
    the error reaches the API unhandled.
    """

    code = "ledger_error"
    status_code = 500

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class NotFoundError(LedgerError):
    code = "not_found"
    status_code = 404


class ValidationError(LedgerError):
    code = "validation_error"
    status_code = 400


class PersistenceError(LedgerError):
    code = "persistence_error"
    status_code = 500


class SideEffectError(LedgerError):
    """Failure of a queued side effect (processor sync, e-mail); retried by the outbox."""

    code = "side_effect_error"
    status_code = 502


_STATUS_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
}


def _phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Request failed"


def _as_details(details: Any) -> dict:
    if details is None:
        return {}
    if isinstance(details, dict):
        return details
    if isinstance(details, list):
        return {"errors": details}
    return {"detail": str(details)}


def error_response(
    status_code: int,
    *,
    code: str | None = None,
    message: str | None = None,
    details: Any = None,
    headers: dict | None = None,
) -> JSONResponse:
    """Render the ``{code, message, data, details}`` error envelope."""
    payload = {
        "code": code or _STATUS_CODES.get(status_code, "http_error"),
        "message": message or _phrase(status_code),
        "data": None,
        "details": _as_details(details),
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload), headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    headers = getattr(exc, "headers", None)
    if isinstance(detail, dict):
        # routers raise HTTPException(detail={"code", "message", "details"})
        return error_response(
            exc.status_code,
            code=detail.get("code"),
            message=detail.get("message") or detail.get("detail"),
            details=detail.get("details"),
            headers=headers,
        )
    if isinstance(detail, str):
        return error_response(exc.status_code, message=detail, details={"detail": detail}, headers=headers)
    return error_response(exc.status_code, details=detail, headers=headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Validation failed"
    if errors:
        first = errors[0] or {}
        location = ".".join(
            str(part) for part in first.get("loc") or [] if part not in {"body", "query", "path", "header"}
        )
        reason = first.get("msg") or message
        message = f"{location}: {reason}" if location else str(reason)
    return error_response(422, code="validation_error", message=message, details={"errors": errors})


async def ledger_exception_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Ledger error on %s %s: %s", request.method, request.url.path, exc.message, extra={"code": exc.code})
    return error_response(exc.status_code, code=exc.code, message=exc.message, details=exc.details)


async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    headers = getattr(exc, "headers", None)
    return error_response(
        429,
        details=getattr(exc, "detail", None),
        headers=headers if isinstance(headers, dict) else None,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, code="internal_server_error", message="Internal server error")


def register_exception_handlers(app) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exception_handler)
    app.add_exception_handler(LedgerError, ledger_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
