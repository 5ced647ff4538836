"""
provider_cache.py — Short-lived cache of provider reachability probes.

Probing a provider (SMTP handshake, Graph API lookup, ``getMe`` on the
bot API) costs a network round trip, so results are kept for a TTL
(default 5 minutes) and shared by every request.

Usage:
    cache = ProviderStatusCache(ttl_seconds=300)
    ok = await cache.check(Channel.SMS, transport)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from backend.app.dispatch.channels.base import ChannelTransport
from backend.app.dispatch.models import Channel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderStatus:
    channel: Channel
    available: bool
    checked_at: float
    cached: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "channel": self.channel.value,
            "available": self.available,
            "cached": self.cached,
        }


class ProviderStatusCache:
    def __init__(
        self,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Channel, ProviderStatus] = {}
        self._lock = asyncio.Lock()

    def _fresh(self, channel: Channel) -> Optional[ProviderStatus]:
        entry = self._entries.get(channel)
        if entry is None:
            return None
        if self._clock() - entry.checked_at >= self.ttl_seconds:
            return None
        return entry

    async def check(self, channel: Channel, transport: ChannelTransport) -> ProviderStatus:
        cached = self._fresh(channel)
        if cached is not None:
            return ProviderStatus(channel, cached.available, cached.checked_at, cached=True)

        async with self._lock:
            cached = self._fresh(channel)
            if cached is not None:
                return ProviderStatus(channel, cached.available, cached.checked_at, cached=True)

            try:
                available = bool(await transport.verify())
            except Exception as exc:
                logger.warning(
                    "Provider probe for %s failed: %s", channel.value, exc,
                    extra={"channel": channel.value},
                )
                available = False

            entry = ProviderStatus(channel, available, self._clock())
            self._entries[channel] = entry
            return entry

    async def check_all(
        self, transports: Mapping[Channel, ChannelTransport]
    ) -> Dict[Channel, ProviderStatus]:
        return {channel: await self.check(channel, t) for channel, t in transports.items()}

    def invalidate(self, channel: Optional[Channel] = None) -> None:
        if channel is None:
            self._entries.clear()
        else:
            self._entries.pop(channel, None)
