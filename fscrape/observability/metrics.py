"""Metrics collection for scrape sessions.

Tracks request volume, retries, rate limit waits and error types per session.

Usage:
    from fscrape.observability import MetricsCollector

    metrics = MetricsCollector()

    with metrics.session(session.id, "reddit") as m:
        # ... run fetch loop ...
        m.record_request()
        m.record_page(25)
        m.record_retry(error_type="NetworkError")

    print(metrics.get(session.id).to_summary())
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generator


@dataclass
class SessionMetrics:
    """Metrics for a single run of a session's fetch loop.

    A session resumed several times gets one SessionMetrics per run.
    """

    session_id: str
    platform: str
    started_at: datetime
    ended_at: datetime | None = None

    # Counts
    requests: int = 0
    pages: int = 0
    items: int = 0
    retries: int = 0
    failures: int = 0

    # Rate limiting
    rate_limit_waits: int = 0
    rate_limit_wait_seconds: float = 0.0
    rate_limit_hits: int = 0  # HTTP 429 responses

    # Error breakdown by type
    errors_by_type: dict[str, int] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        """Total duration in seconds."""
        end = self.ended_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    @property
    def items_per_second(self) -> float:
        """Overall throughput for this run."""
        if self.duration_seconds <= 0:
            return 0.0
        return self.items / self.duration_seconds

    def record_request(self) -> None:
        self.requests += 1

    def record_page(self, items: int) -> None:
        """Record a committed page."""
        self.pages += 1
        self.items += items

    def record_retry(self, error_type: str = "unknown", rate_limited: bool = False) -> None:
        """Record a retried attempt with its error type."""
        self.retries += 1
        self.errors_by_type[error_type] = self.errors_by_type.get(error_type, 0) + 1
        if rate_limited:
            self.rate_limit_hits += 1

    def record_failure(self, error_type: str = "unknown") -> None:
        """Record the error that ended the run."""
        self.failures += 1
        self.errors_by_type[error_type] = self.errors_by_type.get(error_type, 0) + 1

    def record_rate_limit_wait(self, seconds: float) -> None:
        if seconds <= 0:
            return
        self.rate_limit_waits += 1
        self.rate_limit_wait_seconds += seconds

    def complete(self) -> None:
        """Mark run as finished."""
        self.ended_at = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/storage."""
        return {
            "session_id": self.session_id,
            "platform": self.platform,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": round(self.duration_seconds, 2),
            "requests": self.requests,
            "pages": self.pages,
            "items": self.items,
            "items_per_second": round(self.items_per_second, 2),
            "retries": self.retries,
            "failures": self.failures,
            "rate_limit_waits": self.rate_limit_waits,
            "rate_limit_wait_seconds": round(self.rate_limit_wait_seconds, 2),
            "rate_limit_hits": self.rate_limit_hits,
            "errors_by_type": self.errors_by_type,
        }

    def to_summary(self) -> str:
        """Generate human-readable summary."""
        lines = [
            f"Session Summary ({self.platform} {self.session_id[:8]})",
            "=" * 40,
            f"Duration: {self.duration_seconds:.1f}s",
            f"Requests: {self.requests}",
            f"Pages: {self.pages}",
            f"Items: {self.items}",
            f"Speed: {self.items_per_second:.1f} items/sec",
            f"Retries: {self.retries}",
        ]

        if self.rate_limit_waits:
            lines.append(
                f"Rate limit waits: {self.rate_limit_waits} ({self.rate_limit_wait_seconds:.1f}s)"
            )
        if self.rate_limit_hits:
            lines.append(f"HTTP 429 responses: {self.rate_limit_hits}")

        if self.errors_by_type:
            lines.append("")
            lines.append("Errors by Type:")
            for error_type, count in sorted(self.errors_by_type.items(), key=lambda x: -x[1]):
                lines.append(f"  {error_type}: {count}")

        return "\n".join(lines)


class MetricsCollector:
    """Collect and manage session metrics.

    Several sessions may run at once, so runs are keyed by session id.
    """

    def __init__(self) -> None:
        self._active: dict[str, SessionMetrics] = {}
        self._history: list[SessionMetrics] = []

    @property
    def active(self) -> dict[str, SessionMetrics]:
        return dict(self._active)

    @property
    def history(self) -> list[SessionMetrics]:
        """Get history of finished runs."""
        return self._history.copy()

    @contextmanager
    def session(self, session_id: str, platform: str) -> Generator[SessionMetrics, None, None]:
        """Context manager for one run of a session's fetch loop.

        Args:
            session_id: Session being run
            platform: Platform name

        Yields:
            SessionMetrics instance for tracking
        """
        metrics = SessionMetrics(
            session_id=session_id,
            platform=platform,
            started_at=datetime.now(timezone.utc),
        )
        self._active[session_id] = metrics

        try:
            yield metrics
        finally:
            metrics.complete()
            self._active.pop(session_id, None)
            self._history.append(metrics)

    def get(self, session_id: str) -> SessionMetrics | None:
        """Active run for a session, else its most recent finished run."""
        if session_id in self._active:
            return self._active[session_id]
        for metrics in reversed(self._history):
            if metrics.session_id == session_id:
                return metrics
        return None

    def get_stats(self) -> dict[str, Any]:
        """Get aggregate statistics across all finished runs."""
        if not self._history:
            return {}

        return {
            "total_runs": len(self._history),
            "total_requests": sum(m.requests for m in self._history),
            "total_items": sum(m.items for m in self._history),
            "total_retries": sum(m.retries for m in self._history),
            "total_rate_limit_wait_seconds": round(
                sum(m.rate_limit_wait_seconds for m in self._history), 2
            ),
        }
