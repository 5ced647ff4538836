"""
models.py — Shared data structures for the dispatch-assurance subsystem.

Defines:
    • Channel        — outbound channel enum
    • MessageType    — enumerated reward category of a message
    • RecordKind     — ledger record kinds (SUCCESS / FAILED / RETRY)
    • SendRequest    — one validated, sanitised send
    • DeliveryInfo   — per-send context written with every ledger record
    • DeliveryRecord — one immutable ledger line
    • OutcomeEvent   — normalised event handed to the reward tracker
    • DeliveryStats  — aggregate returned by the ledger statistics query

═══════════════════════════════════════════════════════════════════════════
RECORD LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    validated SendRequest
          │
          ├── attempt 1 fails (retryable) ──► RETRY   record
          ├── attempt 2 fails (retryable) ──► RETRY   record
          └── attempt 3 ─┬─ ok ─────────────► SUCCESS record ─► OutcomeEvent(success=True)
                         └─ fails ──────────► FAILED  record ─► OutcomeEvent(success=False)

Exactly one settled record (SUCCESS or FAILED) per validated request.
RETRY records are intermediate notices written as they happen.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class Channel(str, Enum):
    """Outbound notification channels."""
    EMAIL    = "email"
    SMS      = "sms"
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"


class MessageType(str, Enum):
    """Reward category of a message, derived from channel + variant."""
    ORDER_UPDATE       = "Order Update"
    REPORT             = "Report"
    DELIVERY_ALERT     = "Delivery Alert"
    CRM_ALERT          = "CRM Alert"
    QUICK_NOTIFICATION = "Quick Notification"
    COMMAND_RESPONSE   = "Command Response"
    FALLBACK_UPDATE    = "Fallback Update"
    URGENT_UPDATE      = "Urgent Update"


class RecordKind(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED  = "FAILED"
    RETRY   = "RETRY"


# Ledger "status" value written next to each kind
RECORD_STATUS: Dict[RecordKind, str] = {
    RecordKind.SUCCESS: "delivered",
    RecordKind.FAILED:  "failed",
    RecordKind.RETRY:   "retrying",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Requests & context
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SendRequest:
    """
    A single logical send, produced by the validator.

    Attributes
    ----------
    channel : Channel
    destination : str
        Email address, E.164 phone number or Telegram chat id.
    content : str
        Email body or message text (already HTML-escaped).
    variant : str
        Free-form message type chosen by the caller ("delivery", "fallback", ...).
    user_id : str
        Platform user the reward event is attributed to.
    subject : str | None
        Email subject; None for other channels.
    """
    channel: Channel
    destination: str
    content: str
    variant: str
    user_id: str
    subject: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "channel": self.channel.value,
            "destination": self.destination,
            "variant": self.variant,
            "user_id": self.user_id,
            "content_length": len(self.content),
        }
        if self.subject is not None:
            d["subject"] = self.subject
        return d


@dataclass(frozen=True)
class DeliveryInfo:
    """Context copied into every ledger record of one send."""
    channel: Channel
    recipient: str
    user_id: str
    message_type: MessageType
    variant: str

    @classmethod
    def from_request(cls, request: SendRequest, message_type: MessageType) -> "DeliveryInfo":
        return cls(
            channel=request.channel,
            recipient=request.destination,
            user_id=request.user_id,
            message_type=message_type,
            variant=request.variant,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Ledger records
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DeliveryRecord:
    """One immutable line of the delivery ledger."""
    type: RecordKind
    channel: str
    recipient: str
    user_id: str
    message_type: str
    variant: str = ""
    timestamp: datetime = field(default_factory=_now)
    message_id: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    retry_count: int = 0
    attempt_number: Optional[int] = None

    @property
    def status(self) -> str:
        return RECORD_STATUS[self.type]

    @classmethod
    def from_info(cls, kind: RecordKind, info: DeliveryInfo, **kwargs: Any) -> "DeliveryRecord":
        return cls(
            type=kind,
            channel=info.channel.value,
            recipient=info.recipient,
            user_id=info.user_id,
            message_type=info.message_type.value,
            variant=info.variant,
            **kwargs,
        )

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "channel": self.channel,
            "recipient": self.recipient,
            "user_id": self.user_id,
            "message_type": self.message_type,
            "variant": self.variant,
            "retry_count": self.retry_count,
            "status": self.status,
        }
        if self.message_id is not None:
            d["message_id"] = self.message_id
        if self.error is not None:
            d["error"] = self.error
        if self.attempt_number is not None:
            d["attempt_number"] = self.attempt_number
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeliveryRecord":
        """
        Rebuild a record from a parsed ledger line.

        Raises KeyError / ValueError / TypeError on malformed input; the
        ledger reader treats any of those as a line to skip.
        """
        timestamp = datetime.fromisoformat(data["timestamp"])
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(
            type=RecordKind(data["type"]),
            channel=str(data["channel"]),
            recipient=str(data.get("recipient", "")),
            user_id=str(data.get("user_id", "")),
            message_type=str(data.get("message_type", "")),
            variant=str(data.get("variant", "")),
            timestamp=timestamp,
            message_id=data.get("message_id"),
            error=data.get("error"),
            retry_count=int(data.get("retry_count", 0)),
            attempt_number=data.get("attempt_number"),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Events & results
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class OutcomeEvent:
    """Settled outcome of one send, handed to the reward tracker."""
    user_id: str
    channel: Channel
    type: str
    message_type: MessageType
    success: bool

    def to_dict(self) -> Dict[str, Any]:
        # Wire shape consumed by the reward tracker
        return {
            "userId": self.user_id,
            "channel": self.channel.value,
            "type": self.type,
            "messageType": self.message_type.value,
            "success": self.success,
        }


@dataclass(frozen=True)
class TransportResult:
    """What a channel transport returns on success."""
    message_id: str
    provider_response: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class DispatchResult:
    """Accepted send, returned to the caller."""
    channel: Channel
    message_id: str
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "channel": self.channel.value,
            "message_id": self.message_id,
        }


@dataclass
class ChannelStats:
    total: int = 0
    successful: int = 0
    failed: int = 0
    retried: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "retried": self.retried,
        }


@dataclass
class DeliveryStats:
    """
    Aggregate over one time window of the ledger.

    ``total`` counts settled sends (SUCCESS + FAILED); RETRY notices are
    counted in ``retried`` only.
    """
    time_range: str
    total: int = 0
    successful: int = 0
    failed: int = 0
    retried: int = 0
    by_channel: Dict[str, ChannelStats] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        """Percentage of settled sends that succeeded, 2 decimals."""
        if self.total == 0:
            return 0.0
        return round(self.successful / self.total * 100, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time_range": self.time_range,
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "retried": self.retried,
            "success_rate": self.success_rate,
            "by_channel": {ch: s.to_dict() for ch, s in self.by_channel.items()},
        }
