"""Sliding Window Rate Limiter.

Paces outbound requests per platform:
- Each window keeps a log of request timestamps
- A request may proceed while the window holds fewer than max_requests
- Per-second/minute/hour windows compose; every window must allow
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Mapping

from ..config.settings import PlatformLimits
from ..core.types import Platform
from ..observability.logger import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

# Waits shorter than this are not worth an info log line
_LOG_WAIT_THRESHOLD = 1.0


@dataclass(frozen=True)
class RateLimitStatus:
    """Point-in-time view of a limiter."""

    remaining: int
    reset_in: float  # seconds until the oldest logged request leaves its window
    is_limited: bool

    @property
    def reset_at(self) -> datetime:
        """Wall-clock time of the next reset."""
        return datetime.now(timezone.utc) + timedelta(seconds=self.reset_in)


@dataclass
class SlidingWindowLimiter:
    """Sliding window log rate limiter.

    Usage:
        limiter = SlidingWindowLimiter(max_requests=60, window=60.0)

        # Acquire before making request
        await limiter.acquire()
        await make_request()
    """

    # Configuration
    max_requests: int
    window: float  # seconds
    name: str = ""
    clock: Clock = time.monotonic
    sleep: Sleep = asyncio.sleep

    # State
    _timestamps: deque[float] = field(default_factory=deque, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_requests <= 0:
            raise ValueError(f"max_requests must be positive, got {self.max_requests}")
        if self.window <= 0:
            raise ValueError(f"window must be positive, got {self.window}")
        if not self.name:
            self.name = f"{self.max_requests}/{self.window:g}s"

    def _prune(self, now: float) -> None:
        cutoff = now - self.window
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    @property
    def count(self) -> int:
        """Requests logged inside the current window."""
        self._prune(self.clock())
        return len(self._timestamps)

    def can_proceed(self) -> bool:
        """Whether a request may be issued right now."""
        return self.count < self.max_requests

    def record_request(self) -> None:
        """Log a request at the current time."""
        now = self.clock()
        self._prune(now)
        self._timestamps.append(now)

    def time_until_allowed(self) -> float:
        """Seconds until a slot frees, 0 if a request may proceed now."""
        now = self.clock()
        self._prune(now)
        if len(self._timestamps) < self.max_requests:
            return 0.0
        # The entry that must leave the window for the count to drop below max
        blocking = self._timestamps[len(self._timestamps) - self.max_requests]
        return max(0.0, blocking + self.window - now)

    async def wait_until_allowed(self) -> float:
        """Suspend until a slot frees.

        Returns:
            Total wait time in seconds (0 if no wait needed)
        """
        waited = 0.0
        while True:
            wait = self.time_until_allowed()
            if wait <= 0:
                return waited
            await self.sleep(wait)
            waited += wait

    async def acquire(self) -> float:
        """Wait for a slot and record the request.

        No suspension point separates the final check from the record,
        so concurrent tasks cannot overshoot the window.

        Returns:
            Wait time in seconds
        """
        waited = await self.wait_until_allowed()
        self.record_request()
        return waited

    def reset(self) -> None:
        """Forget all logged requests."""
        self._timestamps.clear()

    def status(self) -> RateLimitStatus:
        now = self.clock()
        self._prune(now)
        remaining = max(0, self.max_requests - len(self._timestamps))
        reset_in = self._timestamps[0] + self.window - now if self._timestamps else 0.0
        return RateLimitStatus(
            remaining=remaining,
            reset_in=max(0.0, reset_in),
            is_limited=remaining == 0,
        )


@dataclass
class CompositeRateLimiter:
    """Intersection of several sliding windows.

    A request proceeds only when every window allows it. When blocked,
    the wait is the longest of the individual window waits. A server-side
    rate limit (HTTP 429) blocks the whole limiter until its backoff ends.

    Usage:
        limiter = CompositeRateLimiter.from_limits(settings.reddit)
        waited = await limiter.acquire()
    """

    limiters: list[SlidingWindowLimiter] = field(default_factory=list)
    sleep: Sleep = asyncio.sleep
    name: str = ""
    clock: Clock = time.monotonic

    _backoff_until: float = field(default=0.0, init=False, repr=False)

    @classmethod
    def from_limits(
        cls,
        limits: PlatformLimits,
        *,
        name: str = "",
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> CompositeRateLimiter:
        """Build one window per configured per-second/minute/hour cap."""
        windows: list[SlidingWindowLimiter] = []
        for max_requests, window, label in (
            (limits.max_requests_per_second, 1.0, "second"),
            (limits.max_requests_per_minute, 60.0, "minute"),
            (limits.max_requests_per_hour, 3600.0, "hour"),
        ):
            if max_requests:
                windows.append(
                    SlidingWindowLimiter(
                        max_requests=max_requests,
                        window=window,
                        name=f"{max_requests}/{label}",
                        clock=clock,
                        sleep=sleep,
                    )
                )
        return cls(limiters=windows, sleep=sleep, name=name, clock=clock)

    def can_proceed(self) -> bool:
        if self._backoff_remaining() > 0:
            return False
        return all(limiter.can_proceed() for limiter in self.limiters)

    def record_request(self) -> None:
        for limiter in self.limiters:
            limiter.record_request()

    def record_rate_limit(self, delay: float) -> None:
        """Hold every caller back for `delay` seconds after a 429."""
        if delay <= 0:
            return
        until = self.clock() + delay
        if until > self._backoff_until:
            self._backoff_until = until
            logger.warning(
                f"Server rate limit hit, backing off {delay:.1f}s",
                extra={"limiter": self.name},
            )

    def time_until_allowed(self) -> float:
        window_wait = max((limiter.time_until_allowed() for limiter in self.limiters), default=0.0)
        return max(window_wait, self._backoff_remaining())

    def _backoff_remaining(self) -> float:
        return max(0.0, self._backoff_until - self.clock())

    async def wait_until_allowed(self) -> float:
        waited = 0.0
        while True:
            wait = self.time_until_allowed()
            if wait <= 0:
                break
            if wait >= _LOG_WAIT_THRESHOLD:
                logger.info(
                    f"Rate limit reached, waiting {wait:.1f}s",
                    extra={"limiter": self.name, "blocked_by": self._blocking_windows()},
                )
            await self.sleep(wait)
            waited += wait
        return waited

    async def acquire(self) -> float:
        waited = await self.wait_until_allowed()
        self.record_request()
        return waited

    def reset(self) -> None:
        self._backoff_until = 0.0
        for limiter in self.limiters:
            limiter.reset()

    def status(self) -> RateLimitStatus:
        backoff = self._backoff_remaining()
        if not self.limiters:
            return RateLimitStatus(remaining=0, reset_in=backoff, is_limited=backoff > 0)
        statuses = [limiter.status() for limiter in self.limiters]
        return RateLimitStatus(
            remaining=0 if backoff > 0 else min(s.remaining for s in statuses),
            reset_in=max(backoff, *(s.reset_in for s in statuses)),
            is_limited=backoff > 0 or any(s.is_limited for s in statuses),
        )

    def _blocking_windows(self) -> list[str]:
        blocked = [limiter.name for limiter in self.limiters if not limiter.can_proceed()]
        if self._backoff_remaining() > 0:
            blocked.append("server-backoff")
        return blocked


class RateLimiterRegistry:
    """One shared limiter per platform.

    Every session scraping a platform draws from the same budget.
    """

    def __init__(
        self,
        limits: Mapping[Platform, PlatformLimits],
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._limits = dict(limits)
        self._clock = clock
        self._sleep = sleep
        self._limiters: dict[Platform, CompositeRateLimiter] = {}

    def get(self, platform: Platform) -> CompositeRateLimiter:
        """Limiter for a platform, created on first use."""
        limiter = self._limiters.get(platform)
        if limiter is None:
            limits = self._limits.get(platform) or PlatformLimits()
            limiter = CompositeRateLimiter.from_limits(
                limits,
                name=platform.value,
                clock=self._clock,
                sleep=self._sleep,
            )
            self._limiters[platform] = limiter
        return limiter

    def reset_all(self) -> None:
        for limiter in self._limiters.values():
            limiter.reset()
