"""Base protocol and data classes for persistence sinks."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from ..core.types import Comment, ForumPost, User


@dataclass
class SaveResult:
    """Result of a batch commit."""

    saved: int = 0  # New rows
    updated: int = 0  # Rows that already existed and were refreshed
    posts: int = 0
    comments: int = 0
    users: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.saved + self.updated

    @property
    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def merge(self, other: SaveResult) -> SaveResult:
        """Merge another SaveResult into this one."""
        return SaveResult(
            saved=self.saved + other.saved,
            updated=self.updated + other.updated,
            posts=self.posts + other.posts,
            comments=self.comments + other.comments,
            users=self.users + other.users,
            errors=self.errors + other.errors,
        )


@runtime_checkable
class PersistenceSink(Protocol):
    """Protocol for batch persistence of scraped items.

    A commit is all-or-nothing: on failure it raises and nothing from
    the batch is kept. Re-committing the same items must not duplicate them.
    """

    @property
    def name(self) -> str:
        """Sink name (e.g., 'sqlite')."""
        ...

    async def commit_batch(
        self,
        posts: list[ForumPost],
        comments: list[Comment],
        users: list[User],
    ) -> SaveResult:
        """Persist one page worth of items atomically.

        Raises:
            StorageError: nothing from the batch was committed
        """
        ...

    async def close(self) -> None: ...
