from __future__ import annotations

import json
from http import HTTPStatus
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

# FastAPI's own documentation routes must stay raw for Swagger/ReDoc.
_PASSTHROUGH_PATHS = frozenset({"/openapi.json", "/docs", "/docs/oauth2-redirect", "/redoc"})
_DROPPED_HEADERS = frozenset({"content-length", "content-type"})


def _phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Success"


def success_envelope(data: Any, status_code: int = 200) -> dict[str, Any]:
    return {
        "code": "created" if status_code == 201 else "accepted" if status_code == 202 else "ok",
        "message": _phrase(status_code),
        "data": data,
        "details": {},
    }


def _already_enveloped(payload: Any) -> bool:
    return isinstance(payload, dict) and {"code", "message"} <= payload.keys() and bool(
        payload.keys() & {"data", "details"}
    )


def _copy_headers(source: Response, target: Response) -> Response:
    for key, value in source.headers.items():
        if key.lower() not in _DROPPED_HEADERS:
            target.headers[key] = value
    return target


class ResponseEnvelopeMiddleware(BaseHTTPMiddleware):
    """Wrap successful JSON responses as ``{code, message, data, details}``.

    Error responses are already enveloped by the exception handlers in
    ``app.core.errors`` and pass through untouched.
    """

    async def dispatch(self, request, call_next) -> Response:
        response = await call_next(request)
        if request.url.path in _PASSTHROUGH_PATHS or not 200 <= response.status_code < 300:
            return response

        if response.status_code == 204:
            return _copy_headers(response, JSONResponse(status_code=200, content=success_envelope(None)))

        if not response.headers.get("content-type", "").startswith("application/json"):
            return response

        body = b"".join([chunk async for chunk in response.body_iterator])
        try:
            payload = json.loads(body.decode("utf-8")) if body else None
        except (UnicodeDecodeError, ValueError):
            payload = None
            enveloped = None
        else:
            if _already_enveloped(payload):
                enveloped = {**success_envelope(None, response.status_code), **payload}
            else:
                enveloped = success_envelope(payload, response.status_code)

        if enveloped is None:
            # body_iterator is consumed; replay the raw bytes
            return _copy_headers(
                response,
                Response(content=body, status_code=response.status_code, media_type="application/json"),
            )
        return _copy_headers(response, JSONResponse(status_code=response.status_code, content=enveloped))


def register_response_envelope(app) -> None:
    app.add_middleware(ResponseEnvelopeMiddleware)
