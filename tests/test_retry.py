"""Tests for fscrape/rate_limit/retry.py."""

import asyncio
import random
from unittest.mock import AsyncMock, MagicMock

import pytest

from fscrape.config import PlatformLimits
from fscrape.core.errors import (
    HTTPStatusError,
    NetworkError,
    RateLimitError,
    RetryExhaustedError,
    ValidationError,
)
from fscrape.rate_limit import ExponentialBackoff, FailureType, RetryAttempt, RetryPolicy


def make_policy(clock, max_retries: int = 3, **kwargs) -> RetryPolicy:
    kwargs.setdefault("backoff", ExponentialBackoff(initial_delay=1.0, max_delay=10.0, jitter=0.0))
    return RetryPolicy(max_retries=max_retries, sleep=clock.sleep, **kwargs)


class TestExecute:
    """Tests for RetryPolicy.execute()."""

    @pytest.mark.asyncio
    async def test_success_first_try(self, clock):
        """No retries when the call succeeds."""
        policy = make_policy(clock)
        func = AsyncMock(return_value="ok")

        assert await policy.execute(func, 1, key="v") == "ok"
        func.assert_awaited_once_with(1, key="v")
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_retryable_then_success(self, clock):
        """k transient failures (< max_retries) fire the callback k times."""
        callback = MagicMock()
        policy = make_policy(clock, on_retry=[callback])
        func = AsyncMock(side_effect=[NetworkError("reset"), HTTPStatusError(status_code=503), "page"])

        result = await policy.execute(func)

        assert result == "page"
        assert func.await_count == 3
        assert callback.call_count == 2
        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_fatal_error_not_retried(self, clock):
        """A fatal error propagates unchanged on the first failure."""
        callback = MagicMock()
        policy = make_policy(clock, on_retry=[callback])
        error = ValidationError("bad payload")
        func = AsyncMock(side_effect=error)

        with pytest.raises(ValidationError) as exc_info:
            await policy.execute(func)

        assert exc_info.value is error
        assert func.await_count == 1
        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, clock):
        """404 is fatal."""
        policy = make_policy(clock)
        func = AsyncMock(side_effect=HTTPStatusError(status_code=404))

        with pytest.raises(HTTPStatusError):
            await policy.execute(func)

        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_exhaustion_wraps_last_error(self, clock):
        """After max_retries, RetryExhaustedError carries the last error."""
        policy = make_policy(clock, max_retries=2)
        last = NetworkError("still down")
        func = AsyncMock(side_effect=[NetworkError("down"), NetworkError("down"), last])

        with pytest.raises(RetryExhaustedError) as exc_info:
            await policy.execute(func)

        error = exc_info.value
        assert error.attempts == 3
        assert error.retries == 2
        assert error.last_error is last
        assert error.__cause__ is last
        assert error.failure_type == FailureType.NETWORK.value
        assert "2 retries" in str(error)

    @pytest.mark.asyncio
    async def test_unknown_errors_are_retried(self, clock):
        """Unclassified exceptions get retried up to the cap."""
        policy = make_policy(clock, max_retries=1)
        func = AsyncMock(side_effect=[RuntimeError("odd"), "ok"])

        assert await policy.execute(func) == "ok"

    @pytest.mark.asyncio
    async def test_zero_retries(self, clock):
        """max_retries=0 gives exactly one attempt."""
        policy = make_policy(clock, max_retries=0)
        func = AsyncMock(side_effect=NetworkError())

        with pytest.raises(RetryExhaustedError):
            await policy.execute(func)

        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_sync_function(self, clock):
        """Plain callables are supported."""
        policy = make_policy(clock)

        assert await policy.execute(lambda x: x * 2, 21) == 42

    @pytest.mark.asyncio
    async def test_attempt_timeout(self, clock):
        """attempt_timeout turns a hung attempt into a retried timeout."""
        policy = make_policy(clock, max_retries=1, attempt_timeout=0.01)
        calls = {"n": 0}

        async def hang_once():
            calls["n"] += 1
            if calls["n"] == 1:
                await asyncio.sleep(10)
            return "done"

        assert await policy.execute(hang_once) == "done"
        assert calls["n"] == 2

    def test_negative_retries_rejected(self, clock):
        """max_retries must be >= 0."""
        with pytest.raises(ValueError):
            make_policy(clock, max_retries=-1)


class TestRetryAfter:
    """Tests for server-requested delays."""

    @pytest.mark.asyncio
    async def test_retry_after_overrides_backoff(self, clock):
        """Retry-After replaces the computed delay."""
        policy = make_policy(clock)
        func = AsyncMock(side_effect=[RateLimitError(retry_after=3.5), "ok"])

        await policy.execute(func)

        assert clock.sleeps == [3.5]

    @pytest.mark.asyncio
    async def test_retry_after_beyond_max_delay_honoured(self, clock):
        """A Retry-After longer than the backoff maximum is waited out in full."""
        policy = make_policy(clock)
        attempts = []
        policy.on_retry.append(attempts.append)
        func = AsyncMock(side_effect=[RateLimitError(retry_after=120), "ok"])

        result = await policy.execute(func)

        assert result == "ok"
        assert clock.sleeps == [120.0]
        assert attempts[0].delay == 120.0
        assert attempts[0].retry_after == 120.0

    @pytest.mark.asyncio
    async def test_retry_after_ignored_when_disabled(self, clock):
        """respect_rate_limit_headers=False uses backoff."""
        policy = make_policy(clock, respect_rate_limit_headers=False)
        func = AsyncMock(side_effect=[RateLimitError(retry_after=3.5), "ok"])

        await policy.execute(func)

        assert clock.sleeps == [1.0]


class TestCallbacks:
    """Tests for retry callbacks."""

    @pytest.mark.asyncio
    async def test_callback_receives_attempt(self, clock):
        """Callbacks get a RetryAttempt describing the retry."""
        seen: list[RetryAttempt] = []
        policy = make_policy(clock)
        policy.add_callback(seen.append)
        error = NetworkError("reset")

        await policy.execute(AsyncMock(side_effect=[error, "ok"]))

        assert len(seen) == 1
        assert seen[0].attempt == 1
        assert seen[0].delay == 1.0
        assert seen[0].error is error
        assert seen[0].failure_type == FailureType.NETWORK

    @pytest.mark.asyncio
    async def test_async_callback_awaited(self, clock):
        """Async callbacks are awaited."""
        callback = AsyncMock()
        policy = make_policy(clock, on_retry=[callback])

        await policy.execute(AsyncMock(side_effect=[NetworkError(), "ok"]))

        callback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failing_callback_ignored(self, clock):
        """A broken callback does not stop the retry."""
        policy = make_policy(clock, on_retry=[MagicMock(side_effect=RuntimeError("bug"))])

        assert await policy.execute(AsyncMock(side_effect=[NetworkError(), "ok"])) == "ok"


class TestFromLimits:
    """Tests for building a policy from PlatformLimits."""

    def test_from_limits(self):
        """Retries, backoff and header handling come from the limits."""
        limits = PlatformLimits(
            max_retries=5,
            backoff_multiplier=1.5,
            initial_delay=2.0,
            max_delay=30.0,
            respect_rate_limit_headers=False,
        )

        policy = RetryPolicy.from_limits(limits, rng=random.Random(0))

        assert policy.max_retries == 5
        assert isinstance(policy.backoff, ExponentialBackoff)
        assert policy.backoff.multiplier == 1.5
        assert policy.backoff.max_delay == 30.0
        assert policy.respect_rate_limit_headers is False
