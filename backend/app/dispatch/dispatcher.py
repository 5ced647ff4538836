"""
dispatcher.py — Orchestration of one logical send.

═══════════════════════════════════════════════════════════════════════════
FLOW
═══════════════════════════════════════════════════════════════════════════

    send(channel, payload) ─┐
    send_unified(payload) ──┴─► PayloadValidator.validate      (fail fast)
                                     │
                                     ▼
                             determine_message_type           (once)
                                     │
                                     ▼
                             RetryExecutor.execute(transport.send)
                                     │   └─ on_retry → ledger.record_retry
                          ┌──────────┴──────────┐
                       success                failure
                          │                      │
               ledger.record_success     ledger.record_failure
                          │              classifier.report → correlation id
                          │                      │
                  OutcomeEvent(success)   OutcomeEvent(failure)
                  (background task)       (background task)
                          │                      │
                   DispatchResult       raise DeliveryFailedError

Ledger and publish failures are logged here and never reach the caller:
a send that went out is reported as accepted even if its record or its
reward event could not be written.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional, Set

from backend.app.core.errors import (
    DeliveryFailedError,
    LedgerWriteError,
    RetryStoppedError,
)
from backend.app.dispatch.channels.base import ChannelTransport
from backend.app.dispatch.classifier import ErrorClassifier
from backend.app.dispatch.events import EventPublisher, NullEventPublisher
from backend.app.dispatch.ledger import DeliveryLedger
from backend.app.dispatch.message_types import determine_message_type
from backend.app.dispatch.models import (
    Channel,
    DeliveryInfo,
    DispatchResult,
    MessageType,
    OutcomeEvent,
    SendRequest,
    TransportResult,
)
from backend.app.dispatch.retry import RetryExecutor, RetryPolicy
from backend.app.dispatch.validator import UNIFIED, PayloadValidator

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Validate, send with retry, record, and hand off the outcome event.

    Parameters
    ----------
    transports : mapping of Channel → ChannelTransport
    ledger : DeliveryLedger
    validator : PayloadValidator
    executor : RetryExecutor
    publisher : EventPublisher
        Reward-tracker hand-off; defaults to a publisher that drops events.
    classifier : ErrorClassifier
    """

    def __init__(
        self,
        transports: Mapping[Channel, ChannelTransport],
        ledger: DeliveryLedger,
        *,
        validator: Optional[PayloadValidator] = None,
        executor: Optional[RetryExecutor] = None,
        publisher: Optional[EventPublisher] = None,
        classifier: Optional[ErrorClassifier] = None,
    ):
        self.transports = dict(transports)
        self.ledger = ledger
        self.validator = validator or PayloadValidator()
        self.classifier = classifier or ErrorClassifier()
        self.executor = executor or RetryExecutor(classifier=self.classifier)
        self.publisher: EventPublisher = publisher or NullEventPublisher()
        self._pending: Set[asyncio.Task] = set()

    # ═══════════════════════════════════════════════════════════════════
    # Entry points
    # ═══════════════════════════════════════════════════════════════════

    async def send(
        self,
        channel: Channel,
        payload: Mapping[str, Any],
        *,
        policy: Optional[RetryPolicy] = None,
    ) -> DispatchResult:
        """Channel-specific entry point."""
        request = self.validator.validate(Channel(channel).value, payload)
        return await self._dispatch(request, policy)

    async def send_unified(
        self,
        payload: Mapping[str, Any],
        *,
        policy: Optional[RetryPolicy] = None,
    ) -> DispatchResult:
        """Multi-channel entry point; ``payload["channel"]`` picks the channel."""
        request = self.validator.validate(UNIFIED, payload)
        return await self._dispatch(request, policy)

    async def drain(self) -> None:
        """Wait for every scheduled outcome-event hand-off to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ═══════════════════════════════════════════════════════════════════
    # Core
    # ═══════════════════════════════════════════════════════════════════

    async def _dispatch(
        self,
        request: SendRequest,
        policy: Optional[RetryPolicy] = None,
    ) -> DispatchResult:
        transport = self.transports.get(request.channel)
        if transport is None:
            raise RuntimeError(f"No transport configured for channel: {request.channel.value}")

        message_type = determine_message_type(request)
        info = DeliveryInfo.from_request(request, message_type)
        log_extra = {"channel": request.channel.value, "user_id": request.user_id}

        async def attempt() -> TransportResult:
            return await transport.send(
                request.destination,
                request.content,
                request.variant,
                subject=request.subject,
            )

        async def on_retry(attempt_number: int, error: BaseException) -> None:
            try:
                await self.ledger.record_retry(info, attempt_number, error)
            except LedgerWriteError as exc:
                logger.error("Could not record retry: %s", exc, extra=log_extra)

        try:
            outcome = await self.executor.execute(
                attempt,
                f"{request.channel.value} send to {request.destination}",
                on_retry=on_retry,
                policy=policy,
            )
        except RetryStoppedError as exc:
            await self._record_failure(info, exc.last_error, exc.attempts)
            self._emit(request, message_type, success=False)

            report = self.classifier.report(exc.last_error, request.channel.value)
            raise DeliveryFailedError(
                channel=request.channel.value,
                user_message=report.user_message,
                correlation_id=report.correlation_id,
                timestamp=report.timestamp,
            ) from exc

        message_id = outcome.value.message_id
        try:
            await self.ledger.record_success(info, message_id, retry_count=outcome.attempts)
        except LedgerWriteError as exc:
            logger.error("Could not record success: %s", exc, extra=log_extra)
        self._emit(request, message_type, success=True)

        logger.info(
            "%s accepted for %s (%s)", request.channel.value, request.user_id, message_type.value,
            extra={**log_extra, "message_id": message_id, "message_type": message_type.value},
        )
        return DispatchResult(
            channel=request.channel,
            message_id=message_id,
            attempts=outcome.attempts,
        )

    async def _record_failure(self, info: DeliveryInfo, error: BaseException, attempts: int) -> None:
        try:
            await self.ledger.record_failure(info, error, retry_count=attempts)
        except LedgerWriteError as exc:
            logger.error(
                "Could not record failure: %s", exc,
                extra={"channel": info.channel.value, "user_id": info.user_id},
            )

    # ═══════════════════════════════════════════════════════════════════
    # Outcome-event hand-off
    # ═══════════════════════════════════════════════════════════════════

    def _emit(self, request: SendRequest, message_type: MessageType, success: bool) -> None:
        event = OutcomeEvent(
            user_id=request.user_id,
            channel=request.channel,
            type=request.variant,
            message_type=message_type,
            success=success,
        )
        task = asyncio.get_running_loop().create_task(self._publish(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, event: OutcomeEvent) -> None:
        try:
            await self.publisher.publish(event)
        except Exception as exc:
            logger.warning(
                "Failed to log karma event: %s", exc,
                extra={"channel": event.channel.value, "user_id": event.user_id},
            )
