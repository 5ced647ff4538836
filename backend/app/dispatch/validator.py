"""
validator.py — Channel payload validation and sanitisation.

Every inbound payload passes through ``PayloadValidator.validate`` before
any transport is touched. A failed rule raises ``ValidationError`` naming
the offending field; nothing is sent and nothing is written to the ledger.

═══════════════════════════════════════════════════════════════════════════
RULES
═══════════════════════════════════════════════════════════════════════════

    Channel    Required                       Format                Limits
    ────────   ────────────────────────────   ───────────────────   ─────────────────────────
    email      to, subject, body, userId      RFC-5322-like         subject ≤200, body ≤10000
    whatsapp   to, message, userId            E.164 (+<cc><digits>) message ≤4096
    telegram   chatId, message, userId        numeric chat id       message ≤4096
    sms        to, message, userId            E.164                 message ≤160
    unified    channel, userId + the above    channel ∈ the four    per channel

Content guard (body / message):
    • no NUL bytes
    • no single line longer than 10 000 characters

Rules are checked against the raw input; every string field of the
resulting SendRequest is then HTML-entity escaped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from backend.app.core.errors import ValidationError
from backend.app.dispatch.models import Channel, SendRequest

UNIFIED = "unified"

EMAIL_PATTERN = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)
E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")
CHAT_ID_PATTERN = re.compile(r"^-?\d+$")
PHONE_SEPARATORS = re.compile(r"[\s\-().]")

EMAIL_SUBJECT_MAX = 200
EMAIL_BODY_MAX = 10_000
WHATSAPP_MESSAGE_MAX = 4096
TELEGRAM_MESSAGE_MAX = 4096
SMS_MESSAGE_MAX = 160
MAX_LINE_LENGTH = 10_000

_HTML_ESCAPES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
}


def escape_html(value: str) -> str:
    """Entity-escape ``& < > " ' /``."""
    return "".join(_HTML_ESCAPES.get(ch, ch) for ch in value)


@dataclass(frozen=True)
class ChannelDefaults:
    """Variant used when the caller does not send a ``type``."""
    email: str = "transactional"
    sms: str = "fallback"
    whatsapp: str = "delivery"
    telegram: str = "notification"

    def variant_for(self, channel: Channel) -> str:
        return getattr(self, channel.value)


class PayloadValidator:
    """
    Stateless validator for the four channel payload shapes.

    Usage:
        validator = PayloadValidator(ChannelDefaults())
        request = validator.validate("sms", {"to": "+15551234567",
                                             "message": "Out for delivery",
                                             "userId": "U-17"})
    """

    def __init__(self, defaults: Optional[ChannelDefaults] = None):
        self.defaults = defaults or ChannelDefaults()

    # ── Entry point ──

    def validate(self, channel: str, payload: Mapping[str, Any]) -> SendRequest:
        """
        Validate ``payload`` for ``channel`` ("email", "sms", "whatsapp",
        "telegram" or "unified") and return the sanitised SendRequest.
        """
        if not isinstance(payload, Mapping):
            raise ValidationError("payload", "Payload must be a JSON object")

        if channel == UNIFIED:
            return self._validate_unified(payload)

        try:
            target = Channel(channel)
        except ValueError:
            raise ValidationError("channel", f"Unknown validation channel '{channel}'")
        return self._validate_channel(target, payload)

    # ── Per-channel rules ──

    def _validate_unified(self, payload: Mapping[str, Any]) -> SendRequest:
        raw_channel = _required_str(payload, "channel", "Communication channel")
        _required_id(payload, "userId", "User ID")

        try:
            target = Channel(raw_channel)
        except ValueError:
            valid = ", ".join(c.value for c in Channel)
            raise ValidationError("channel", f"Invalid channel. Must be one of: {valid}")
        return self._validate_channel(target, payload)

    def _validate_channel(self, channel: Channel, payload: Mapping[str, Any]) -> SendRequest:
        subject: Optional[str] = None

        if channel == Channel.EMAIL:
            destination = _required_str(payload, "to", "Recipient email (to)")
            subject = _required_str(payload, "subject", "Email subject")
            content = _required_str(payload, "body", "Email body")
            user_id = _required_id(payload, "userId", "User ID")

            if not EMAIL_PATTERN.match(destination):
                raise ValidationError("to", "Invalid recipient email format")
            _check_length(subject, "subject", "Email subject", EMAIL_SUBJECT_MAX)
            _check_length(content, "body", "Email body", EMAIL_BODY_MAX)
            _check_content(content, "body")

        elif channel == Channel.TELEGRAM:
            destination = _required_id(payload, "chatId", "Chat ID")
            content = _required_str(payload, "message", "Message content")
            user_id = _required_id(payload, "userId", "User ID")

            if not CHAT_ID_PATTERN.match(destination):
                raise ValidationError("chatId", "Chat ID must be numeric")
            _check_length(content, "message", "Message", TELEGRAM_MESSAGE_MAX)
            _check_content(content, "message")

        else:
            destination = _required_str(payload, "to", "Recipient phone number (to)")
            content = _required_str(payload, "message", "Message content")
            user_id = _required_id(payload, "userId", "User ID")

            destination = PHONE_SEPARATORS.sub("", destination)
            if not E164_PATTERN.match(destination):
                raise ValidationError(
                    "to",
                    "Invalid phone number format. Use international format (e.g., +1234567890)",
                )
            limit = SMS_MESSAGE_MAX if channel == Channel.SMS else WHATSAPP_MESSAGE_MAX
            _check_length(content, "message", "Message", limit)
            _check_content(content, "message")

        variant = payload.get("type")
        if variant is None or (isinstance(variant, str) and not variant.strip()):
            variant = self.defaults.variant_for(channel)
        elif not isinstance(variant, str):
            raise ValidationError("type", "Message type must be a string")

        return SendRequest(
            channel=channel,
            destination=escape_html(destination),
            content=escape_html(content),
            variant=escape_html(variant),
            user_id=escape_html(user_id),
            subject=escape_html(subject) if subject is not None else None,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Field helpers
# ═══════════════════════════════════════════════════════════════════════════

def _required_str(payload: Mapping[str, Any], key: str, label: str) -> str:
    value = payload.get(key)
    if value is None or (isinstance(value, str) and value.strip() == ""):
        raise ValidationError(key, f"{label} is required")
    if not isinstance(value, str):
        raise ValidationError(key, f"{label} must be a string")
    return value


def _required_id(payload: Mapping[str, Any], key: str, label: str) -> str:
    """Identifiers may arrive as JSON numbers; normalise them to strings."""
    value = payload.get(key)
    if isinstance(value, bool):
        raise ValidationError(key, f"{label} must be a string or number")
    if isinstance(value, int):
        return str(value)
    return _required_str(payload, key, label).strip()


def _check_length(value: str, key: str, label: str, maximum: int, minimum: int = 1) -> None:
    if len(value) < minimum:
        raise ValidationError(key, f"{label} must be at least {minimum} characters long")
    if len(value) > maximum:
        raise ValidationError(key, f"{label} must not exceed {maximum} characters")


def _check_content(value: str, key: str) -> None:
    if "\0" in value:
        raise ValidationError(key, "Message content contains invalid characters")
    if any(len(line) > MAX_LINE_LENGTH for line in value.split("\n")):
        raise ValidationError(key, "Message contains lines that are too long")
