import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Optional

from app.core.context import get_loan_id, get_request_id
from app.core.settings import settings

LEDGER_LOGGER_NAME = "app.ledger"

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
    | {"message", "asctime", "request_id", "loan_id", "stream"}
)


class RequestContextFilter(logging.Filter):
    """Stamp request and loan ids onto every record.

    A ``loan_id`` passed through ``extra`` wins over the request-bound one, so
    background work (outbox drain) still logs the loan it is handling.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        if getattr(record, "loan_id", None) is None:
            record.loan_id = get_loan_id()
        return True


class JsonFormatter(logging.Formatter):
    def __init__(self, stream_label: str = "app") -> None:
        super().__init__()
        self.stream_label = stream_label

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "stream": self.stream_label,
            "request_id": getattr(record, "request_id", "-"),
            "loan_id": getattr(record, "loan_id", "-"),
        }
        extra = {
            key: value
            for key, value in vars(record).items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _handler(formatter: str, level: str) -> dict:
    return {
        "class": "logging.StreamHandler",
        "level": level,
        "formatter": formatter,
        "filters": ["request_context"],
        "stream": "ext://sys.stdout",
    }


def configure_logging(level: Optional[str] = None) -> None:
    log_level = (level or settings.log_level).upper()
    quiet = {"handlers": ["default"], "level": log_level, "propagate": False}
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"request_context": {"()": RequestContextFilter}},
            "formatters": {
                "json": {"()": JsonFormatter, "stream_label": "app"},
                "ledger_json": {"()": JsonFormatter, "stream_label": "ledger"},
            },
            "handlers": {
                "default": _handler("json", log_level),
                "ledger": _handler("ledger_json", log_level),
            },
            "loggers": {
                "": {"handlers": ["default"], "level": log_level, "propagate": False},
                LEDGER_LOGGER_NAME: {"handlers": ["ledger"], "level": log_level, "propagate": False},
                "uvicorn": quiet,
                "uvicorn.error": quiet,
                "uvicorn.access": quiet,
                "sqlalchemy.engine": {**quiet, "level": "WARNING"},
                "httpx": {**quiet, "level": "WARNING"},
            },
        }
    )
    logging.getLogger(__name__).info("Logging configured", extra={"environment": settings.environment})


def get_ledger_logger() -> logging.Logger:
    """Audit stream for installment status changes."""
    return logging.getLogger(LEDGER_LOGGER_NAME)
