"""
base.py — Transport contract shared by every channel backend.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from backend.app.dispatch.models import Channel, TransportResult


@runtime_checkable
class ChannelTransport(Protocol):
    """
    Outbound port for one channel.

    ``send`` returns the provider message id or raises a TransportError
    (or any exception exposing ``status_code`` / ``code``) on failure.
    """

    channel: Channel

    async def send(
        self,
        destination: str,
        content: str,
        variant: str,
        *,
        subject: Optional[str] = None,
    ) -> TransportResult:
        ...

    async def verify(self) -> bool:
        ...
