"""
Structured logging for the membership service.

- JSON lines in production, single-line text elsewhere.
- request_id and caller user_id are bound per request (contextvars) and
  stamped on every record, so entitlement decisions and lifecycle
  transitions of one request can be correlated.
- Fields passed through extra= are emitted alongside the message.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_ctx_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

CONTEXT_FIELDS = ("request_id", "caller_id")

# Attributes present on every LogRecord; anything else arrived via extra=
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    """Fetch the current request_id from context (if any)."""
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


def record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """extra= fields of a record, context fields excluded."""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and key not in CONTEXT_FIELDS and not key.startswith("_")
    }


class ContextFilter(logging.Filter):
    """Stamp request_id and caller_id from the request context."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_ctx_var.get()
        if getattr(record, "caller_id", None) is None:
            record.caller_id = user_id_ctx_var.get()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
            "caller_id": getattr(record, "caller_id", None),
        }
        payload.update(record_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        context = ""
        rid = getattr(record, "request_id", None)
        if rid:
            context += f" [rid={rid}]"
        caller = getattr(record, "caller_id", None)
        if caller:
            context += f" [caller={caller}]"
        fields = " ".join(f"{key}={value}" for key, value in record_fields(record).items())
        line = f"{_timestamp(record)} {record.levelname} [membership]{context} {record.getMessage()}"
        if fields:
            line = f"{line} {fields}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: Union[int, str] = logging.INFO) -> None:
    """Install the membership handler (idempotent: replaces earlier handlers)."""
    logger = logging.getLogger("membership")
    logger.setLevel(level.upper() if isinstance(level, str) else level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else TextFormatter())
    handler.addFilter(ContextFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn keeps its own handlers
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False
