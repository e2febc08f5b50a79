"""Shared types for fscrape.

These types are used by the platform clients, the persistence sink
and the session manager.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class Platform(str, Enum):
    """Forum platform identifier."""

    REDDIT = "reddit"
    HACKERNEWS = "hackernews"


class SessionStatus(str, Enum):
    """Scrape session lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """No transition leaves a terminal status."""
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED)

    @property
    def is_active(self) -> bool:
        """Running or paused sessions are candidates for resume."""
        return self in (SessionStatus.RUNNING, SessionStatus.PAUSED)


# query_type -> whether a query_value is required
QUERY_TYPES: dict[Platform, dict[str, bool]] = {
    Platform.REDDIT: {
        "subreddit": True,
        "search": True,
        "user": True,
        "frontpage": False,
    },
    Platform.HACKERNEWS: {
        "top": False,
        "new": False,
        "best": False,
        "ask": False,
        "show": False,
        "job": False,
        "user": True,
    },
}


@dataclass
class ForumPost:
    """A submission (Reddit post, HN story)."""

    id: str
    platform: Platform
    title: str
    author: str | None = None
    url: str | None = None
    content: str | None = None
    score: int = 0
    comment_count: int = 0
    created_at: datetime | None = None
    community: str | None = None  # subreddit; None for HN
    permalink: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["platform"] = self.platform.value
        d["created_at"] = self.created_at.isoformat() if self.created_at else None
        return d


@dataclass
class Comment:
    """A comment attached to a post."""

    id: str
    post_id: str
    platform: Platform
    content: str
    author: str | None = None
    parent_id: str | None = None
    score: int = 0
    depth: int = 0
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["platform"] = self.platform.value
        d["created_at"] = self.created_at.isoformat() if self.created_at else None
        return d


@dataclass
class User:
    """A platform account."""

    id: str
    username: str
    platform: Platform
    karma: int | None = None
    created_at: datetime | None = None
    about: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["platform"] = self.platform.value
        d["created_at"] = self.created_at.isoformat() if self.created_at else None
        return d


Item = Union[ForumPost, Comment, User]


@dataclass
class Page:
    """One page of results from a platform client.

    `next_resume_token` is opaque to everything but the client that issued it.
    """

    items: list[Item] = field(default_factory=list)
    next_resume_token: str | None = None
    has_more: bool = False

    @property
    def posts(self) -> list[ForumPost]:
        return [i for i in self.items if isinstance(i, ForumPost)]

    @property
    def comments(self) -> list[Comment]:
        return [i for i in self.items if isinstance(i, Comment)]

    @property
    def users(self) -> list[User]:
        return [i for i in self.items if isinstance(i, User)]

    @property
    def last_item_id(self) -> str | None:
        """Id of the last item on the page, if any."""
        return self.items[-1].id if self.items else None
