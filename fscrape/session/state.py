"""Session record and lifecycle rules.

A Session is the durable mirror of one scraping run. The SessionManager
is the only writer; stores persist it through `to_dict`/`from_dict`.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..config.constants import MAX_SESSION_ERRORS
from ..core.errors import InvalidConfigError, InvalidStateError
from ..core.types import QUERY_TYPES, Platform, SessionStatus, utcnow

# Allowed lifecycle transitions
TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset({SessionStatus.RUNNING, SessionStatus.CANCELLED}),
    SessionStatus.RUNNING: frozenset(
        {
            SessionStatus.PAUSED,
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.PAUSED: frozenset({SessionStatus.RUNNING, SessionStatus.CANCELLED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in TRANSITIONS[current]


def _parse_platform(value: Any) -> Platform:
    if isinstance(value, Platform):
        return value
    if not value:
        raise InvalidConfigError("platform is required")
    try:
        return Platform(str(value).lower())
    except ValueError:
        valid = ", ".join(p.value for p in Platform)
        raise InvalidConfigError(f"Unknown platform: {value!r} (expected one of: {valid})") from None


@dataclass(frozen=True)
class SessionConfig:
    """What to scrape. Validated at construction."""

    platform: Platform
    query_type: str
    query_value: str | None = None
    target_item_count: int | None = None
    include_comments: bool = False
    include_users: bool = False
    resume_token: str | None = None  # Start from an existing cursor
    resumed_from: str | None = None  # Session whose cursor seeded this one

    def __post_init__(self) -> None:
        platform = _parse_platform(self.platform)
        object.__setattr__(self, "platform", platform)

        if not self.query_type:
            raise InvalidConfigError("query_type is required", platform=platform.value)
        query_type = self.query_type.lower()
        object.__setattr__(self, "query_type", query_type)

        known = QUERY_TYPES[platform]
        if query_type not in known:
            raise InvalidConfigError(
                f"Unknown query type {query_type!r} for {platform.value} "
                f"(expected one of: {', '.join(sorted(known))})",
                platform=platform.value,
            )
        if known[query_type] and not (self.query_value and self.query_value.strip()):
            raise InvalidConfigError(
                f"query_value is required for {platform.value} {query_type}",
                platform=platform.value,
            )

        target = self.target_item_count
        if target is not None and (isinstance(target, bool) or not isinstance(target, int) or target <= 0):
            raise InvalidConfigError(
                f"target_item_count must be a positive integer, got {target!r}",
                platform=platform.value,
            )

    @property
    def query(self) -> str:
        """Short label like 'reddit subreddit python'."""
        return f"{self.query_type} {self.query_value}" if self.query_value else self.query_type


@dataclass
class SessionErrorEntry:
    """One failure recorded against a session."""

    message: str
    error_type: str
    failure_type: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "error_type": self.error_type,
            "failure_type": self.failure_type,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionErrorEntry:
        return cls(
            message=data["message"],
            error_type=data.get("error_type", "Exception"),
            failure_type=data.get("failure_type"),
            timestamp=_parse_dt(data.get("timestamp")) or utcnow(),
        )


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class Session:
    """One scraping run against a platform/query.

    Counters never decrease. `resume_token` only moves after the counters
    of the batch it points past have been applied.
    """

    platform: Platform
    query_type: str
    query_value: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: SessionStatus = SessionStatus.PENDING
    target_item_count: int | None = None

    # Counters
    scraped_item_count: int = 0
    post_count: int = 0
    comment_count: int = 0
    user_count: int = 0
    page_count: int = 0

    # Cursor
    resume_token: str | None = None
    last_item_id: str | None = None

    # Options
    include_comments: bool = False
    include_users: bool = False
    resumed_from: str | None = None

    # Timestamps (UTC)
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    last_activity_at: datetime | None = None
    completed_at: datetime | None = None

    # Errors
    error_count: int = 0
    last_error: str | None = None
    errors: list[SessionErrorEntry] = field(default_factory=list)

    # Request accounting
    request_count: int = 0
    retry_count: int = 0
    rate_limit_hits: int = 0

    milestones_reached: list[int] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: SessionConfig) -> Session:
        return cls(
            platform=config.platform,
            query_type=config.query_type,
            query_value=config.query_value,
            target_item_count=config.target_item_count,
            include_comments=config.include_comments,
            include_users=config.include_users,
            resume_token=config.resume_token,
            resumed_from=config.resumed_from,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def can_resume(self) -> bool:
        """Only paused sessions resume. Failed ones need a new session."""
        return self.status == SessionStatus.PAUSED

    @property
    def query(self) -> str:
        return f"{self.query_type} {self.query_value}" if self.query_value else self.query_type

    @property
    def target_reached(self) -> bool:
        return self.target_item_count is not None and self.scraped_item_count >= self.target_item_count

    @property
    def remaining_items(self) -> int | None:
        if self.target_item_count is None:
            return None
        return max(0, self.target_item_count - self.scraped_item_count)

    def touch(self) -> None:
        self.last_activity_at = utcnow()

    def transition(self, target: SessionStatus) -> None:
        """Move to a new status, stamping the matching timestamps.

        Raises:
            InvalidStateError: the move is not allowed; nothing changes
        """
        if not can_transition(self.status, target):
            raise InvalidStateError(
                f"Cannot move session {self.id} from {self.status.value} to {target.value}",
                current_status=self.status.value,
                target_status=target.value,
                session_id=self.id,
                platform=self.platform.value,
            )
        now = utcnow()
        if target == SessionStatus.RUNNING and self.started_at is None:
            self.started_at = now
        if target.is_terminal:
            self.completed_at = now
        self.status = target
        self.last_activity_at = now

    def record_error(self, error: BaseException, failure_type: str | None = None) -> None:
        """Append to the bounded error log. Status is left alone."""
        message = str(error) or type(error).__name__
        self.error_count += 1
        self.last_error = message
        self.errors.append(
            SessionErrorEntry(
                message=message,
                error_type=type(error).__name__,
                failure_type=failure_type,
            )
        )
        if len(self.errors) > MAX_SESSION_ERRORS:
            del self.errors[: len(self.errors) - MAX_SESSION_ERRORS]

    def copy(self) -> Session:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Stable JSON-compatible form."""
        return {
            "id": self.id,
            "platform": self.platform.value,
            "query_type": self.query_type,
            "query_value": self.query_value,
            "status": self.status.value,
            "target_item_count": self.target_item_count,
            "scraped_item_count": self.scraped_item_count,
            "post_count": self.post_count,
            "comment_count": self.comment_count,
            "user_count": self.user_count,
            "page_count": self.page_count,
            "resume_token": self.resume_token,
            "last_item_id": self.last_item_id,
            "include_comments": self.include_comments,
            "include_users": self.include_users,
            "resumed_from": self.resumed_from,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "last_activity_at": _iso(self.last_activity_at),
            "completed_at": _iso(self.completed_at),
            "error_count": self.error_count,
            "last_error": self.last_error,
            "errors": [e.to_dict() for e in self.errors],
            "request_count": self.request_count,
            "retry_count": self.retry_count,
            "rate_limit_hits": self.rate_limit_hits,
            "milestones_reached": list(self.milestones_reached),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=data["id"],
            platform=Platform(data["platform"]),
            query_type=data["query_type"],
            query_value=data.get("query_value"),
            status=SessionStatus(data.get("status", SessionStatus.PENDING.value)),
            target_item_count=data.get("target_item_count"),
            scraped_item_count=data.get("scraped_item_count", 0),
            post_count=data.get("post_count", 0),
            comment_count=data.get("comment_count", 0),
            user_count=data.get("user_count", 0),
            page_count=data.get("page_count", 0),
            resume_token=data.get("resume_token"),
            last_item_id=data.get("last_item_id"),
            include_comments=data.get("include_comments", False),
            include_users=data.get("include_users", False),
            resumed_from=data.get("resumed_from"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            started_at=_parse_dt(data.get("started_at")),
            last_activity_at=_parse_dt(data.get("last_activity_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            error_count=data.get("error_count", 0),
            last_error=data.get("last_error"),
            errors=[SessionErrorEntry.from_dict(e) for e in data.get("errors", [])],
            request_count=data.get("request_count", 0),
            retry_count=data.get("retry_count", 0),
            rate_limit_hits=data.get("rate_limit_hits", 0),
            milestones_reached=list(data.get("milestones_reached", [])),
        )
