"""
Structured logging for the credits service.

- One ``recipe_credits`` logger: JSON lines in production, one readable line
  per record elsewhere.
- The request id is bound per request in a ContextVar and stamped on every
  record by ``RequestIdFilter``.
- ``log_event`` emits ledger and webhook events with a fixed set of leading
  fields (user, event type, error code) followed by free-form extras.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

LOGGER_NAME = "recipe_credits"

# Printed first, in this order, when present on a record
LEADING_FIELDS = ("user_id", "event_type", "error_code")

MAX_FIELD_LENGTH = 500

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Attributes every LogRecord carries; anything else arrived through extra=
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime", "request_id"}


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


@contextmanager
def bind_request_id(request_id: str) -> Iterator[str]:
    """Make ``request_id`` the current request id for the enclosed block."""
    token = request_id_ctx_var.set(request_id)
    try:
        yield request_id
    finally:
        request_id_ctx_var.reset(token)


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for bound, label in ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms")):
        if latency_ms < bound:
            return label
    return ">=1000ms"


def _record_fields(record: logging.LogRecord) -> Dict[str, object]:
    extras = {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED_ATTRS and value is not None
    }
    ordered = {key: extras.pop(key) for key in LEADING_FIELDS if key in extras}
    ordered.update(sorted(extras.items()))
    return ordered


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


class RequestIdFilter(logging.Filter):
    """Stamp the bound request id on records that do not carry one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        payload.update(_record_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        parts = [_timestamp(record), record.levelname, f"[{LOGGER_NAME}]"]
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        parts.extend(f"{key}={value}" for key, value in _record_fields(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: Optional[str] = None) -> None:
    """Install the service handler on the ``recipe_credits`` logger."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel((level or os.getenv("LOG_LEVEL") or "INFO").upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False


def _safe_truncate(value, limit: int = MAX_FIELD_LENGTH):
    if isinstance(value, (int, float, bool)):
        return value
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Log a ledger or billing event. Extras are truncated; numbers pass through."""
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        # Workers and tests that never called configure_logging
        configure_logging(os.getenv("ENV", "development"))

    payload = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id,
        "event_type": event_type,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        payload[key] = _safe_truncate(value)

    getattr(logger, level, logger.info)(msg, extra=payload)
