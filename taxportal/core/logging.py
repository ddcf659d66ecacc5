"""
Structured ledger logging.

Every ledger event goes through log_event with a stable message name
(e.g. "time_entry.recorded", "ledger.retry") plus client_id, event_type and
error_code fields. The request_id of the calling handler is picked up from
context so a contended write can be traced back to the request that hit it.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from taxportal.core.config import settings

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_LOGGER_NAME = "taxportal"
_MAX_VALUE_LENGTH = 500

# Attributes every LogRecord carries; anything else was passed via extra=
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def get_request_id() -> Optional[str]:
    return request_id_ctx_var.get()


def _format_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace('+00:00', 'Z')


class RequestIdFilter(logging.Filter):
    """Inject request_id into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line; structured fields are emitted as top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _format_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS and key not in payload and value is not None:
                payload[key] = value
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        client = getattr(record, "client_id", None)
        parts = [_format_timestamp(record), record.levelname, f"[{_LOGGER_NAME}]"]
        if rid:
            parts.append(f"[rid={rid}]")
        if client:
            parts.append(f"[client={client}]")
        parts.append(record.getMessage())
        return " ".join(parts)


def configure_logging(env: str = "development") -> None:
    """JSON lines in production, pretty lines elsewhere."""
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger.handlers = [handler]
    logger.propagate = True


def _loggable(value):
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (bool, int, float, list, tuple)):
        return value
    text = str(value)
    if len(text) <= _MAX_VALUE_LENGTH:
        return text
    return text[:_MAX_VALUE_LENGTH] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    client_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
) -> None:
    """
    Emit one structured ledger event on the "taxportal" logger.

    Numbers and flags in extra are kept as-is; strings and other objects
    (exceptions included) are stringified and clipped.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    if not logger.handlers:
        configure_logging(settings.ENV)

    payload = {
        "request_id": request_id or get_request_id(),
        "client_id": client_id,
        "event_type": event_type,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        payload[key] = _loggable(value)

    getattr(logger, level, logger.info)(msg, extra=payload)
