"""
Structured logging configuration.

Provides:
    • JSON lines for production (one object per record, for log shipping)
    • Coloured console lines for development
    • Request-scoped context (request_id, client_ip, endpoint) from middleware
    • Delivery fields (channel, user_id, correlation_id, attempt, ...) taken
      from ``extra=`` on each call

Usage:
    from backend.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Dispatching", extra={"channel": "sms", "user_id": "U-17"})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar("request_context", default={})

# Record attributes lifted out of ``extra=``
DELIVERY_FIELDS = (
    "channel",
    "user_id",
    "message_id",
    "message_type",
    "correlation_id",
    "attempt",
    "delay_ms",
    "duration_ms",
    "status_code",
    "endpoint",
)

NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def set_request_context(**kwargs: Any) -> None:
    """Replace the request-scoped context; call with no args to clear."""
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def _delivery_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in DELIVERY_FIELDS if hasattr(record, key)}


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": settings.APP_NAME,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        ctx = get_request_context()
        if ctx:
            entry["request"] = ctx
        entry.update(_delivery_fields(record))

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["exception"] = {
                "type": type(exc).__name__,
                "message": str(exc),
                "stack": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL [req] (channel) <ERR-id> logger: message``"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        tags = []

        request_id = get_request_context().get("request_id")
        if request_id:
            tags.append(f"[{request_id[:8]}]")
        channel = getattr(record, "channel", None)
        if channel:
            tags.append(f"({channel})")
        correlation = getattr(record, "correlation_id", None)
        if correlation:
            tags.append(f"<{correlation}>")

        prefix = " ".join(tags)
        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET} "
            f"{prefix + ' ' if prefix else ''}{record.name}: {record.getMessage()}"
        )

        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """
    Install a single stdout handler on the root logger.

    Defaults come from settings: LOG_LEVEL, and JSON output in production.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    root.handlers.clear()

    if json_output is None:
        json_output = settings.is_production

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else PrettyFormatter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
