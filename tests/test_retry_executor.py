"""
test_retry_executor.py — Exponential backoff and terminal-error short circuit.

Sleeps are captured by an injected fake so no test waits on the clock.

Run with:
    pytest tests/test_retry_executor.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from backend.app.core.errors import (
    AuthError,
    BadRequestError,
    NetworkError,
    NonRetryableError,
    RateLimitError,
    RetryExhaustedError,
)
from backend.app.dispatch.retry import RetryExecutor, RetryPolicy


class _FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class _Flaky:
    """Fails with the queued errors, then returns ``value``."""

    def __init__(self, errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


def _executor(policy=None):
    sleep = _FakeSleep()
    return RetryExecutor(policy or RetryPolicy(), sleep=sleep), sleep


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Policy
# ═══════════════════════════════════════════════════════════════════════════

class TestRetryPolicy:

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.base_delay_ms == 2000
        assert policy.max_delay_ms == 30000

    def test_exponential_delays(self):
        policy = RetryPolicy()
        assert policy.delay_ms(1) == 2000
        assert policy.delay_ms(2) == 4000
        assert policy.delay_ms(3) == 8000

    def test_delay_capped(self):
        policy = RetryPolicy(max_attempts=10, base_delay_ms=2000, max_delay_ms=30000)
        assert policy.delay_ms(5) == 30000
        assert policy.delay_ms(9) == 30000

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_negative_delay_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(base_delay_ms=-1)


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Execution
# ═══════════════════════════════════════════════════════════════════════════

class TestRetryExecutor:

    def test_first_attempt_success(self):
        executor, sleep = _executor()
        op = _Flaky([])
        result = asyncio.run(executor.execute(op, "op"))
        assert result.value == "ok"
        assert result.attempts == 1
        assert sleep.calls == []

    def test_success_after_transient_failures(self):
        executor, sleep = _executor()
        op = _Flaky([NetworkError("down"), RateLimitError("slow")])
        result = asyncio.run(executor.execute(op, "op"))
        assert result.attempts == 3
        assert op.calls == 3
        assert sleep.calls == [2.0, 4.0]

    def test_exhausted_after_three_rate_limits(self):
        executor, sleep = _executor()
        op = _Flaky([RateLimitError("quota")] * 3)
        with pytest.raises(RetryExhaustedError) as exc:
            asyncio.run(executor.execute(op, "sms send"))
        assert op.calls == 3
        assert exc.value.attempts == 3
        assert isinstance(exc.value.last_error, RateLimitError)
        assert "sms send failed after 3 attempts" in str(exc.value)
        assert sleep.calls == [2.0, 4.0]

    def test_no_sleep_after_last_attempt(self):
        executor, sleep = _executor(RetryPolicy(max_attempts=2, base_delay_ms=100))
        op = _Flaky([NetworkError("a"), NetworkError("b")])
        with pytest.raises(RetryExhaustedError):
            asyncio.run(executor.execute(op, "op"))
        assert sleep.calls == [0.1]

    def test_auth_error_not_retried(self):
        executor, sleep = _executor()
        op = _Flaky([AuthError("bad key")])
        with pytest.raises(NonRetryableError) as exc:
            asyncio.run(executor.execute(op, "op"))
        assert op.calls == 1
        assert exc.value.attempts == 1
        assert isinstance(exc.value.last_error, AuthError)
        assert exc.value.__cause__ is exc.value.last_error
        assert sleep.calls == []

    def test_terminal_after_transient(self):
        executor, sleep = _executor()
        op = _Flaky([NetworkError("blip"), BadRequestError("bad number")])
        with pytest.raises(NonRetryableError) as exc:
            asyncio.run(executor.execute(op, "op"))
        assert exc.value.attempts == 2
        assert isinstance(exc.value.last_error, BadRequestError)
        assert sleep.calls == [2.0]

    def test_terminal_error_left_unmodified(self):
        class _ProviderRejection(Exception):
            status_code = 400

        executor, _ = _executor()
        original = _ProviderRejection("bad payload")
        with pytest.raises(NonRetryableError) as exc:
            asyncio.run(executor.execute(_Flaky([original]), "op"))
        assert exc.value.last_error is original
        assert exc.value.attempts == 1
        assert not hasattr(original, "attempts")

    def test_on_retry_hook_called_per_retry(self):
        executor, _ = _executor()
        seen = []

        async def on_retry(attempt, error):
            seen.append((attempt, type(error).__name__))

        op = _Flaky([RateLimitError("q")] * 3)
        with pytest.raises(RetryExhaustedError):
            asyncio.run(executor.execute(op, "op", on_retry=on_retry))
        assert seen == [(1, "RateLimitError"), (2, "RateLimitError")]

    def test_per_call_policy_override(self):
        executor, sleep = _executor()
        op = _Flaky([NetworkError("x")] * 5)
        policy = RetryPolicy(max_attempts=5, base_delay_ms=1000, max_delay_ms=3000)
        with pytest.raises(RetryExhaustedError) as exc:
            asyncio.run(executor.execute(op, "op", policy=policy))
        assert exc.value.attempts == 5
        assert sleep.calls == [1.0, 2.0, 3.0, 3.0]
