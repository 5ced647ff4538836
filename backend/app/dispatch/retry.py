"""
retry.py — Attempt loop with capped exponential backoff.

═══════════════════════════════════════════════════════════════════════════
STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    attempt n ──► operation() ──ok──► return RetryResult(value, n)
                      │
                      fail
                      │
                 classify(error)
                      │
        ┌─────────────┼──────────────────────────┐
     terminal     retryable, n == max        retryable, n < max
        │             │                          │
  NonRetryable  RetryExhaustedError        on_retry(n, error)
                                             sleep(min(base·2^(n-1), cap))
                                                 │
                                             attempt n+1

Backoff (defaults base=2000ms, cap=30000ms):
    after attempt 1: 2000ms, after attempt 2: 4000ms, ...

The sleep is ``asyncio.sleep``: only the task running this send waits;
other in-flight sends keep going.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Generic, List, Optional, TypeVar

from backend.app.core.errors import NonRetryableError, RetryExhaustedError
from backend.app.dispatch.classifier import Classification, ErrorClassifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryHook = Callable[[int, BaseException], Awaitable[None]]
Sleeper = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff bounds."""
    max_attempts: int = 3
    base_delay_ms: int = 2000
    max_delay_ms: int = 30000

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be non-negative")

    def delay_ms(self, attempt: int) -> int:
        """Delay after failed ``attempt`` (1-based)."""
        return min(self.base_delay_ms * (2 ** (attempt - 1)), self.max_delay_ms)


@dataclass
class DeliveryAttempt:
    """Transient record of one attempt; kept in memory for the call only."""
    attempt_number: int
    started_at: datetime
    succeeded: bool = False
    classification: Optional[Classification] = None


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    value: T
    attempts: int


class RetryExecutor:
    """
    Run an async operation under a RetryPolicy.

    Parameters
    ----------
    policy : RetryPolicy
        Default policy; ``execute`` accepts a per-call override.
    classifier : ErrorClassifier
        Decides whether a failure is worth another attempt.
    sleep : coroutine function
        Injected for tests; defaults to ``asyncio.sleep`` (seconds).
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        classifier: Optional[ErrorClassifier] = None,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self.classifier = classifier or ErrorClassifier()
        self._sleep = sleep

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
        *,
        on_retry: Optional[RetryHook] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> RetryResult[T]:
        """
        Run ``operation`` until it succeeds, fails terminally, or the
        attempt budget is spent.

        Failures leave as a RetryStoppedError subclass carrying ``attempts``
        and the provider error as ``last_error`` (also the ``__cause__``).
        """
        policy = policy or self.policy
        history: List[DeliveryAttempt] = []
        last_error: Optional[BaseException] = None

        for attempt in range(1, policy.max_attempts + 1):
            record = DeliveryAttempt(attempt_number=attempt, started_at=datetime.now(timezone.utc))
            history.append(record)
            logger.debug("%s - Attempt %d/%d", name, attempt, policy.max_attempts)

            try:
                value = await operation()
            except Exception as exc:
                last_error = exc
                record.classification = self.classifier.classify(exc)
                logger.warning(
                    "%s - Attempt %d failed (%s): %s",
                    name, attempt, record.classification.kind.value, exc,
                    extra={"attempt": attempt, "status_code": record.classification.status_code},
                )

                if not record.classification.retryable:
                    logger.info("%s - Non-retryable error, giving up", name)
                    raise NonRetryableError(name, attempt, exc) from exc

                if attempt == policy.max_attempts:
                    break

                if on_retry is not None:
                    await on_retry(attempt, exc)

                delay = policy.delay_ms(attempt)
                logger.info(
                    "%s - Retrying in %dms", name, delay,
                    extra={"attempt": attempt, "delay_ms": delay},
                )
                await self._sleep(delay / 1000)
                continue

            record.succeeded = True
            if attempt > 1:
                logger.info("%s - Succeeded on attempt %d", name, attempt)
            return RetryResult(value=value, attempts=attempt)

        logger.error(
            "%s - All %d attempts failed: %s",
            name, policy.max_attempts,
            [a.classification.kind.value for a in history if a.classification],
        )
        raise RetryExhaustedError(name, policy.max_attempts, last_error) from last_error
