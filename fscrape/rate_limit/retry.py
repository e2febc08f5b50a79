"""Retry executor with classified errors and pluggable backoff.

- Retryable failures (network, timeout, 429, 5xx, unknown) are retried
- Fatal failures propagate unchanged on the first occurrence
- After max_retries the last error is wrapped in RetryExhaustedError
- A Retry-After value from the server overrides the computed delay
"""

from __future__ import annotations

import asyncio
import inspect
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from ..config.settings import PlatformLimits
from ..core.errors import RetryExhaustedError
from ..observability.logger import get_logger
from .backoff import BackoffPolicy, ExponentialBackoff, create_backoff
from .classify import FailureType, classify_failure, is_retryable, retry_after_from

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryAttempt:
    """Details handed to retry callbacks before each backoff sleep."""

    attempt: int  # Retry number, 1-indexed
    delay: float  # Seconds about to be slept
    error: BaseException
    failure_type: FailureType
    retry_after: float | None = None


RetryCallback = Callable[[RetryAttempt], Any]


@dataclass
class RetryPolicy:
    """Retry policy with exponential backoff.

    Usage:
        policy = RetryPolicy.from_limits(settings.reddit)

        page = await policy.execute(client.fetch_page, token, 25)
    """

    # Configuration
    max_retries: int = 3
    backoff: BackoffPolicy = field(default_factory=ExponentialBackoff)
    respect_rate_limit_headers: bool = True
    attempt_timeout: float | None = None  # seconds per attempt
    sleep: Sleep = asyncio.sleep
    on_retry: list[RetryCallback] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")

    @classmethod
    def from_limits(
        cls,
        limits: PlatformLimits,
        *,
        attempt_timeout: float | None = None,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
        on_retry: list[RetryCallback] | None = None,
    ) -> RetryPolicy:
        """Build the retry policy configured for a platform."""
        return cls(
            max_retries=limits.max_retries,
            backoff=create_backoff(limits, rng=rng),
            respect_rate_limit_headers=limits.respect_rate_limit_headers,
            attempt_timeout=attempt_timeout,
            sleep=sleep,
            on_retry=list(on_retry or []),
        )

    def add_callback(self, callback: RetryCallback) -> None:
        self.on_retry.append(callback)

    async def execute(
        self,
        func: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Execute function with retries.

        Args:
            func: Async or sync function to execute
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Function result

        Raises:
            RetryExhaustedError: every attempt failed with a retryable error
            Exception: the first fatal error, unchanged
        """
        self.backoff.reset()
        attempts = 0

        while True:
            attempts += 1
            try:
                return await self._invoke(func, *args, **kwargs)
            except Exception as e:
                failure_type = classify_failure(e)

                if not is_retryable(failure_type):
                    logger.debug(
                        f"Non-retryable error: {type(e).__name__}",
                        extra={"failure_type": failure_type.value},
                    )
                    raise

                if attempts > self.max_retries:
                    logger.warning(
                        f"Max retries ({self.max_retries}) exhausted",
                        extra={"error": str(e), "failure_type": failure_type.value},
                    )
                    raise RetryExhaustedError(
                        attempts=attempts,
                        last_error=e,
                        failure_type=failure_type.value,
                    ) from e

                retry_after = retry_after_from(e) if self.respect_rate_limit_headers else None
                delay = self._calculate_delay(attempts, retry_after)

                logger.info(
                    f"Retry {attempts}/{self.max_retries} after {delay:.1f}s",
                    extra={"error": type(e).__name__, "failure_type": failure_type.value},
                )
                await self._notify(
                    RetryAttempt(
                        attempt=attempts,
                        delay=delay,
                        error=e,
                        failure_type=failure_type,
                        retry_after=retry_after,
                    )
                )

                await self.sleep(delay)

    async def _invoke(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        result = func(*args, **kwargs)
        if not inspect.isawaitable(result):
            return result
        if self.attempt_timeout is None:
            return await result
        return await asyncio.wait_for(result, timeout=self.attempt_timeout)

    def _calculate_delay(self, attempt: int, retry_after: float | None) -> float:
        """Calculate delay for retry attempt.

        Args:
            attempt: Retry number (1-based)
            retry_after: Server-requested delay, if honoured (used uncapped)

        Returns:
            Delay in seconds
        """
        if retry_after is not None:
            return max(0.0, retry_after)
        return self.backoff.next_delay(attempt)

    async def _notify(self, attempt: RetryAttempt) -> None:
        for callback in list(self.on_retry):
            try:
                result = callback(attempt)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Retry callback failed", extra={"callback": repr(callback)})
