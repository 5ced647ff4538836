"""
simulation.py — Simulated channel transports for development and tests.

No network traffic: each send is logged and answered with a synthetic
message id, mirroring what the real provider would return.

    Channel    Simulated provider        Message id format
    ────────   ───────────────────────   ──────────────────────────
    email      SMTP relay                <sim-{hex}@mail.local>
    sms        SMS gateway               SM{32 hex}
    whatsapp   WhatsApp Cloud API        wamid.SIM{hex}
    telegram   Telegram Bot API          {incrementing int}

SMS is plain text: the escaped body is unescaped before it is measured and
sent. Bodies over 160 characters are cut to 157 + "..." to match the
single-segment limit of the gateway.
"""

from __future__ import annotations

import html
import itertools
import logging
import uuid
from typing import Any, Dict, Optional

from backend.app.dispatch.models import Channel, TransportResult

logger = logging.getLogger(__name__)

SMS_MAX_GSM7 = 160


def truncate_sms(message: str) -> str:
    if len(message) > SMS_MAX_GSM7:
        return message[: SMS_MAX_GSM7 - 3] + "..."
    return message


def email_priority_header(variant: str) -> str:
    """X-Priority header value: reports go out high priority."""
    return "1" if variant == "report" else "3"


class SimulatedTransport:
    """
    Logs the outbound message and returns a provider-shaped result.

    Parameters
    ----------
    channel : Channel
        Channel this transport serves.
    healthy : bool
        Value reported by ``verify`` (lets tests model a dead provider).
    """

    def __init__(self, channel: Channel, healthy: bool = True):
        self.channel = channel
        self.healthy = healthy
        self._telegram_ids = itertools.count(1000)

    async def verify(self) -> bool:
        return self.healthy

    async def send(
        self,
        destination: str,
        content: str,
        variant: str,
        *,
        subject: Optional[str] = None,
    ) -> TransportResult:
        response: Dict[str, Any] = {"mode": "simulated", "variant": variant}

        if self.channel == Channel.EMAIL:
            message_id = f"<sim-{uuid.uuid4().hex[:16]}@mail.local>"
            response.update({
                "to": destination,
                "subject": subject,
                "x_priority": email_priority_header(variant),
                "html_size": len(content),
            })
            logger.info("[EMAIL] → %s: Subject='%s'", destination, subject)

        elif self.channel == Channel.SMS:
            text = html.unescape(content)
            body = truncate_sms(text)
            message_id = f"SM{uuid.uuid4().hex}"
            response.update({
                "to": destination,
                "message_length": len(body),
                "truncated": len(body) != len(text),
            })
            logger.info(
                "[SMS] → %s: %d chars → '%s'",
                destination, len(body), body[:80] + ("..." if len(body) > 80 else ""),
            )

        elif self.channel == Channel.WHATSAPP:
            message_id = f"wamid.SIM{uuid.uuid4().hex[:24].upper()}"
            response.update({"to": destination, "message_length": len(content)})
            logger.info("[WHATSAPP] → %s: %d chars", destination, len(content))

        else:
            message_id = str(next(self._telegram_ids))
            response.update({"chat_id": destination, "message_length": len(content)})
            logger.info("[TELEGRAM] → chat %s: %d chars", destination, len(content))

        return TransportResult(message_id=message_id, provider_response=response)


def build_simulated_transports() -> Dict[Channel, SimulatedTransport]:
    return {channel: SimulatedTransport(channel) for channel in Channel}
