"""Backoff policies for retry handling.

Attempts are 1-indexed: `next_delay(1)` is the wait before the first retry.
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from ..config.settings import PlatformLimits

_default_rng = random.Random()


class BackoffPolicy(ABC):
    """Abstract base for backoff policies.

    A backoff policy determines how long to wait between retry attempts.
    """

    # Overridden by dataclass fields in subclasses
    jitter: float = 0.0
    max_delay: float = float("inf")
    rng: random.Random | None = None

    @abstractmethod
    def base_delay(self, attempt: int) -> float:
        """Delay before jitter for the given retry (1-indexed)."""
        ...

    def next_delay(self, attempt: int) -> float:
        """Calculate delay for the given retry attempt.

        Args:
            attempt: The retry number (1-indexed)

        Returns:
            Delay in seconds, jittered and clamped to [0, max_delay]
        """
        if attempt < 1:
            raise ValueError(f"attempt is 1-indexed, got {attempt}")
        delay = self.base_delay(attempt)
        if self.jitter > 0 and delay > 0:
            spread = delay * self.jitter
            delay += self._rng().uniform(-spread, spread)
        return min(max(0.0, delay), self.max_delay)

    def reset(self) -> None:
        """Forget per-run state. Stateless policies ignore this."""

    def _rng(self) -> random.Random:
        return self.rng if self.rng is not None else _default_rng


@dataclass
class ExponentialBackoff(BackoffPolicy):
    """Exponential backoff with symmetric jitter.

    delay(n) = min(max_delay, initial_delay * multiplier^(n-1)) +/- jitter

    Example with defaults:
        attempt 1: 1s
        attempt 2: 2s
        attempt 3: 4s
        ...
        attempt 7: 60s (capped at max)
    """

    initial_delay: float = 1.0  # First retry delay in seconds
    multiplier: float = 2.0  # Exponential multiplier
    max_delay: float = 60.0  # Cap in seconds
    jitter: float = 0.1  # +/- fraction of the delay
    rng: random.Random | None = field(default=None, repr=False, compare=False)

    def base_delay(self, attempt: int) -> float:
        return min(self.max_delay, self.initial_delay * (self.multiplier ** (attempt - 1)))


@dataclass
class LinearBackoff(BackoffPolicy):
    """Linear backoff with symmetric jitter.

    delay(n) = min(max_delay, initial_delay * n) +/- jitter
    """

    initial_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.1
    rng: random.Random | None = field(default=None, repr=False, compare=False)

    def base_delay(self, attempt: int) -> float:
        return min(self.max_delay, self.initial_delay * attempt)


@dataclass
class FibonacciBackoff(BackoffPolicy):
    """Fibonacci backoff: 1, 1, 2, 3, 5, 8 ... times initial_delay."""

    initial_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.1
    rng: random.Random | None = field(default=None, repr=False, compare=False)

    def base_delay(self, attempt: int) -> float:
        a, b = 1, 1
        for _ in range(attempt - 1):
            a, b = b, a + b
            if a * self.initial_delay >= self.max_delay:
                break
        return min(self.max_delay, self.initial_delay * a)


@dataclass
class DecorrelatedBackoff(BackoffPolicy):
    """Decorrelated jitter backoff.

    delay(n) = min(max_delay, uniform(initial_delay, previous * 3))

    The randomness is the jitter, so no extra jitter is applied.
    Stateful: call reset() before each new retried operation.
    """

    initial_delay: float = 1.0
    max_delay: float = 20.0
    rng: random.Random | None = field(default=None, repr=False, compare=False)
    _previous: float = field(default=0.0, init=False, repr=False)

    def base_delay(self, attempt: int) -> float:
        previous = self._previous if attempt > 1 and self._previous else self.initial_delay
        delay = min(self.max_delay, self._rng().uniform(self.initial_delay, previous * 3))
        self._previous = delay
        return delay

    def reset(self) -> None:
        self._previous = 0.0


@dataclass
class NoBackoff(BackoffPolicy):
    """No backoff - immediate retry (for testing)."""

    def base_delay(self, attempt: int) -> float:
        return 0.0


def create_backoff(limits: PlatformLimits, rng: random.Random | None = None) -> BackoffPolicy:
    """Build the backoff policy configured for a platform."""
    strategy = limits.backoff_strategy
    if strategy == "exponential":
        return ExponentialBackoff(
            initial_delay=limits.initial_delay,
            multiplier=limits.backoff_multiplier,
            max_delay=limits.max_delay,
            jitter=limits.jitter,
            rng=rng,
        )
    if strategy == "linear":
        return LinearBackoff(
            initial_delay=limits.initial_delay,
            max_delay=limits.max_delay,
            jitter=limits.jitter,
            rng=rng,
        )
    if strategy == "fibonacci":
        return FibonacciBackoff(
            initial_delay=limits.initial_delay,
            max_delay=limits.max_delay,
            jitter=limits.jitter,
            rng=rng,
        )
    if strategy == "decorrelated":
        return DecorrelatedBackoff(
            initial_delay=limits.initial_delay,
            max_delay=limits.max_delay,
            rng=rng,
        )
    return NoBackoff()
