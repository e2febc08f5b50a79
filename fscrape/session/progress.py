"""Progress tracking for scrape sessions.

Pure computation over item counts and a clock: rolling items/sec,
ETA, percent complete and once-only milestones. No I/O.
"""

from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from ..config.constants import DEFAULT_MAX_RATE_SAMPLES, DEFAULT_MILESTONES, DEFAULT_RATE_WINDOW


@dataclass(frozen=True)
class Milestone:
    """A percent-complete threshold crossed during a session."""

    percent: int
    count: int  # Item count when it was detected
    reached_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ProgressSnapshot:
    """Derived view of a session's progress."""

    current: int
    target: int | None
    percent_complete: float | None
    items_per_second: float
    eta_seconds: float | None
    elapsed_seconds: float
    milestones_reached: tuple[int, ...] = ()

    @property
    def eta(self) -> timedelta | None:
        return timedelta(seconds=self.eta_seconds) if self.eta_seconds is not None else None

    def format(self) -> str:
        """One-line human summary.

        Example: "120 items processed of 500 (24.0%) - 3.2 items/sec - ~2 min remaining"
        """
        parts = [f"{self.current} items processed"]
        if self.target is not None:
            parts[0] += f" of {self.target} ({self.percent_complete or 0:.1f}%)"
        parts.append(f"{self.items_per_second:.1f} items/sec")
        if self.eta_seconds is not None:
            if self.eta_seconds == 0:
                parts.append("done")
            elif self.eta_seconds < 60:
                parts.append(f"~{math.ceil(self.eta_seconds)} sec remaining")
            else:
                parts.append(f"~{math.ceil(self.eta_seconds / 60)} min remaining")
        return " - ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": self.current,
            "target": self.target,
            "percent_complete": (
                round(self.percent_complete, 2) if self.percent_complete is not None else None
            ),
            "items_per_second": round(self.items_per_second, 3),
            "eta_seconds": round(self.eta_seconds, 1) if self.eta_seconds is not None else None,
            "elapsed_seconds": round(self.elapsed_seconds, 1),
            "milestones_reached": list(self.milestones_reached),
        }


class ProgressTracker:
    """Track item counts and derive rate, ETA and milestones.

    Rate is computed over a rolling window of (time, cumulative count)
    samples: (count_now - count_at_window_start) / (now - window_start).

    Usage:
        tracker = ProgressTracker(target=500)
        tracker.update(25)
        for milestone in tracker.check_milestones():
            print(f"{milestone.percent}% reached")
        print(tracker.get_snapshot().format())
    """

    def __init__(
        self,
        target: int | None = None,
        initial_count: int = 0,
        *,
        window: float = DEFAULT_RATE_WINDOW,
        max_samples: int = DEFAULT_MAX_RATE_SAMPLES,
        milestones: Iterable[int] = DEFAULT_MILESTONES,
        already_reached: Iterable[int] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if target is not None and target <= 0:
            raise ValueError(f"target must be positive, got {target}")
        if window <= 0:
            raise ValueError(f"window must be positive, got {window}")

        self.target = target
        self.window = window
        self._clock = clock
        self._count = initial_count
        self._started = clock()
        self._samples: deque[tuple[float, int]] = deque(maxlen=max(2, max_samples))
        self._samples.append((self._started, initial_count))
        self._milestones = sorted(set(milestones))
        self._fired: set[int] = set(already_reached)

    @property
    def current(self) -> int:
        return self._count

    @property
    def milestones_reached(self) -> tuple[int, ...]:
        return tuple(sorted(self._fired))

    def update(self, items_added: int) -> None:
        """Add newly committed items."""
        if items_added < 0:
            raise ValueError(f"items_added must be >= 0, got {items_added}")
        self._count += items_added
        self._samples.append((self._clock(), self._count))

    def correct(self, count: int) -> None:
        """Replace the current count.

        Milestones already fired stay fired even if the count goes down.
        """
        self._count = count
        self._samples.append((self._clock(), count))

    def _prune(self, now: float) -> None:
        cutoff = now - self.window
        while len(self._samples) > 1 and self._samples[0][0] < cutoff:
            self._samples.popleft()

    def rate(self) -> float:
        """Items per second over the rolling window."""
        now = self._clock()
        self._prune(now)
        start_time, start_count = self._samples[0]
        elapsed = now - start_time
        if elapsed <= 0:
            return 0.0
        rate = (self._count - start_count) / elapsed
        return rate if math.isfinite(rate) and rate > 0 else 0.0

    def percent_complete(self) -> float | None:
        if self.target is None:
            return None
        return min(100.0, self._count / self.target * 100)

    def _eta_seconds(self, rate: float) -> float | None:
        if self.target is None:
            return None
        remaining = self.target - self._count
        if remaining <= 0:
            return 0.0
        if rate <= 0:
            return None
        eta = remaining / rate
        return eta if math.isfinite(eta) else None

    def get_eta(self) -> timedelta | None:
        """Time remaining, None when unknown, zero once the target is reached."""
        seconds = self._eta_seconds(self.rate())
        return timedelta(seconds=seconds) if seconds is not None else None

    def estimated_completion(self) -> datetime | None:
        """Wall-clock completion estimate."""
        eta = self.get_eta()
        return datetime.now(timezone.utc) + eta if eta is not None else None

    def check_milestones(self) -> list[Milestone]:
        """Milestones crossed since the last check. Each fires at most once."""
        percent = self.percent_complete()
        if percent is None:
            return []
        crossed = []
        for threshold in self._milestones:
            if threshold in self._fired or percent < threshold:
                continue
            self._fired.add(threshold)
            crossed.append(Milestone(percent=threshold, count=self._count))
        return crossed

    def get_snapshot(self) -> ProgressSnapshot:
        rate = self.rate()
        return ProgressSnapshot(
            current=self._count,
            target=self.target,
            percent_complete=self.percent_complete(),
            items_per_second=rate,
            eta_seconds=self._eta_seconds(rate),
            elapsed_seconds=max(0.0, self._clock() - self._started),
            milestones_reached=self.milestones_reached,
        )

    def format_progress(self) -> str:
        return self.get_snapshot().format()
