"""
events.py — Outcome-event hand-off to the reward tracker.

The dispatcher depends on the one-method ``EventPublisher`` protocol only.
Two implementations ship:

    HttpEventPublisher   POST {base_url}/api/karma/events (bearer auth, httpx)
    NullEventPublisher   logs the event at DEBUG; used when no tracker is configured

Publication is best-effort. Implementations raise ``PublishError`` on
failure; the dispatcher logs and drops it.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from backend.app.core.errors import PublishError
from backend.app.dispatch.models import OutcomeEvent

logger = logging.getLogger(__name__)

EVENTS_PATH = "/api/karma/events"


class EventPublisher(Protocol):
    async def publish(self, event: OutcomeEvent) -> None:
        ...

    async def close(self) -> None:
        ...


class NullEventPublisher:
    """Publisher used when no reward tracker is configured."""

    async def publish(self, event: OutcomeEvent) -> None:
        logger.debug("Reward tracker not configured, dropping event %s", event.to_dict())

    async def close(self) -> None:
        return None


class HttpEventPublisher:
    """
    Reward-tracker client over HTTP.

    Usage:
        publisher = HttpEventPublisher("https://karma.example.com", api_key="...")
        await publisher.publish(event)
        await publisher.close()
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def publish(self, event: OutcomeEvent) -> None:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            client = await self._get_client()
            response = await client.post(
                f"{self.base_url}{EVENTS_PATH}",
                json=event.to_dict(),
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise PublishError(
                f"Reward tracker rejected event: HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise PublishError(f"Reward tracker unreachable: {exc}") from exc

        logger.debug(
            "Karma event logged for %s via %s", event.user_id, event.channel.value,
            extra={"user_id": event.user_id, "channel": event.channel.value},
        )
