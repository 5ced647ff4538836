"""
classifier.py — Transport failure classification and sanitised reporting.

═══════════════════════════════════════════════════════════════════════════
DECISION TABLE
═══════════════════════════════════════════════════════════════════════════

    Condition                               Kind           Retryable
    ─────────────────────────────────────   ────────────   ─────────
    status 401 / 403                        AUTH           no
    status 400                              BAD_REQUEST    no
    status 404                              NOT_FOUND      no
    status 429                              RATE_LIMIT     yes
    DNS / connection / socket timeout       NETWORK        yes
    anything else                           UNKNOWN        yes

The caller never sees provider text. ``report`` picks a phrase from a
static per-channel table, mints a correlation id and logs the full story
(stack + redacted error) server-side under that id.
"""

from __future__ import annotations

import logging
import random
import re
import socket
import string
import time
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from backend.app.core.errors import NetworkError, RetryStoppedError

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    AUTH        = "auth"
    BAD_REQUEST = "bad_request"
    NOT_FOUND   = "not_found"
    RATE_LIMIT  = "rate_limit"
    NETWORK     = "network"
    UNKNOWN     = "unknown"


TERMINAL_KINDS = frozenset({ErrorKind.AUTH, ErrorKind.BAD_REQUEST, ErrorKind.NOT_FOUND})

_STATUS_KINDS: Dict[int, ErrorKind] = {
    400: ErrorKind.BAD_REQUEST,
    401: ErrorKind.AUTH,
    403: ErrorKind.AUTH,
    404: ErrorKind.NOT_FOUND,
    429: ErrorKind.RATE_LIMIT,
}

NETWORK_ERROR_CODES = frozenset({
    "ENOTFOUND",
    "ECONNREFUSED",
    "ECONNRESET",
    "ETIMEDOUT",
    "EAI_AGAIN",
    "EHOSTUNREACH",
})

# Static phrases shown to callers. Keyed by channel, then by kind;
# "send" is the per-channel fallback.
USER_MESSAGES: Dict[str, Dict[str, str]] = {
    "email": {
        "send": "Failed to send email. Please try again later.",
        "auth": "Email service authentication failed.",
        "network": "Email service is temporarily unavailable.",
        "rate_limit": "Email sending limit reached. Please try again later.",
    },
    "whatsapp": {
        "send": "Failed to send WhatsApp message. Please try again later.",
        "auth": "WhatsApp service authentication failed.",
        "rate_limit": "WhatsApp messaging quota exceeded.",
        "network": "WhatsApp service is temporarily unavailable.",
    },
    "telegram": {
        "send": "Failed to send Telegram message. Please try again later.",
        "auth": "Telegram bot authentication failed.",
        "network": "Telegram service is temporarily unavailable.",
        "not_found": "Telegram chat could not be found.",
    },
    "sms": {
        "send": "Failed to send SMS. Please try again later.",
        "auth": "SMS service authentication failed.",
        "rate_limit": "SMS quota exceeded.",
        "network": "SMS service is temporarily unavailable.",
    },
}

# Secrets that may ride along in provider error text
_SECRET_PATTERNS = (
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9\-._~+/]+=*"),
    re.compile(r"(?i)((?:api[_-]?key|access[_-]?token|auth[_-]?token|token|password|secret)[\"']?\s*[:=]\s*[\"']?)[^\s\"'&,;]+"),
    re.compile(r"(?i)(bot)\d+:[A-Za-z0-9_-]+"),
)
REDACTED = "[REDACTED]"


@dataclass(frozen=True)
class Classification:
    kind: ErrorKind
    retryable: bool
    status_code: Optional[int] = None


@dataclass(frozen=True)
class FailureReport:
    """What the caller is allowed to learn about a failed send."""
    correlation_id: str
    kind: ErrorKind
    user_message: str
    timestamp: str


def generate_correlation_id() -> str:
    """``ERR-<epoch ms>-<9 random base36 chars>``."""
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(random.choices(alphabet, k=9))
    return f"ERR-{int(time.time() * 1000)}-{suffix}"


def redact(text: str) -> str:
    """Mask bearer tokens, API keys, passwords and bot tokens in ``text``."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda m: m.group(1) + REDACTED, text)
    return text


def extract_status(error: BaseException) -> Optional[int]:
    """Read a numeric status from ``status_code``, ``status`` or ``response``."""
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
    return None


def is_network_error(error: BaseException) -> bool:
    if isinstance(error, (NetworkError, ConnectionError, socket.gaierror, TimeoutError)):
        return True
    if isinstance(error, httpx.TransportError):
        return True
    code = getattr(error, "code", None)
    return isinstance(code, str) and code.upper() in NETWORK_ERROR_CODES


class ErrorClassifier:
    """Decide retryable vs terminal and build sanitised failure reports."""

    def classify(self, error: BaseException) -> Classification:
        if isinstance(error, RetryStoppedError):
            error = error.last_error

        status = extract_status(error)
        if status is not None and status in _STATUS_KINDS:
            kind = _STATUS_KINDS[status]
        elif is_network_error(error):
            kind = ErrorKind.NETWORK
        else:
            kind = ErrorKind.UNKNOWN

        return Classification(
            kind=kind,
            retryable=kind not in TERMINAL_KINDS,
            status_code=status,
        )

    def user_message(self, channel: str, kind: ErrorKind) -> str:
        messages = USER_MESSAGES.get(channel)
        if not messages:
            return f"{channel.capitalize()} service error. Please try again later."
        return messages.get(kind.value, messages["send"])

    def sanitize(self, error: BaseException) -> Dict[str, Any]:
        """
        Redacted, JSON-safe copy of ``error``.

        Request and response bodies are dropped; only the status and a
        short provider message survive.
        """
        if isinstance(error, RetryStoppedError):
            error = error.last_error

        details: Dict[str, Any] = {
            "type": type(error).__name__,
            "message": redact(str(error)),
        }
        code = getattr(error, "code", None)
        if isinstance(code, str):
            details["code"] = code
        status = extract_status(error)
        if status is not None:
            details["status_code"] = status

        body = getattr(error, "response_body", None)
        if isinstance(body, dict):
            provider_message = body.get("message") or body.get("error")
            if isinstance(provider_message, dict):
                provider_message = provider_message.get("message")
            if provider_message:
                details["provider_message"] = redact(str(provider_message))
        return details

    def report(self, error: BaseException, channel: str, operation: str = "send") -> FailureReport:
        """Mint a correlation id, log the failure server-side, return the safe view."""
        classification = self.classify(error)
        correlation_id = generate_correlation_id()
        timestamp = datetime.now(timezone.utc).isoformat()

        logger.error(
            "%s %s failed [%s] kind=%s status=%s details=%s\n%s",
            channel, operation, correlation_id,
            classification.kind.value, classification.status_code,
            self.sanitize(error),
            redact("".join(traceback.format_exception(type(error), error, error.__traceback__))),
            extra={
                "channel": channel,
                "correlation_id": correlation_id,
                "status_code": classification.status_code,
            },
        )

        return FailureReport(
            correlation_id=correlation_id,
            kind=classification.kind,
            user_message=self.user_message(channel, classification.kind),
            timestamp=timestamp,
        )
