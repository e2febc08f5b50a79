"""SQLite persistence sink for posts, comments and users.

Rows are upserted by (platform, id), so re-fetching a page after a
crash refreshes rows instead of duplicating them.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from pathlib import Path
from typing import Any, Sequence

from ..core.errors import StorageError
from ..core.types import Comment, ForumPost, User
from ..observability.logger import get_logger
from .base import SaveResult

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS posts (
    id TEXT NOT NULL,
    platform TEXT NOT NULL,
    title TEXT NOT NULL,
    author TEXT,
    url TEXT,
    content TEXT,
    score INTEGER NOT NULL DEFAULT 0,
    comment_count INTEGER NOT NULL DEFAULT 0,
    community TEXT,
    permalink TEXT,
    created_at TEXT,
    metadata TEXT,
    scraped_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (platform, id)
);
CREATE TABLE IF NOT EXISTS comments (
    id TEXT NOT NULL,
    platform TEXT NOT NULL,
    post_id TEXT NOT NULL,
    parent_id TEXT,
    author TEXT,
    content TEXT NOT NULL,
    score INTEGER NOT NULL DEFAULT 0,
    depth INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    scraped_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (platform, id)
);
CREATE TABLE IF NOT EXISTS users (
    id TEXT NOT NULL,
    platform TEXT NOT NULL,
    username TEXT NOT NULL,
    karma INTEGER,
    about TEXT,
    created_at TEXT,
    scraped_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (platform, id)
);
CREATE INDEX IF NOT EXISTS idx_posts_created ON posts(platform, created_at);
CREATE INDEX IF NOT EXISTS idx_comments_post ON comments(platform, post_id);
"""

_POST_SQL = """
INSERT INTO posts (id, platform, title, author, url, content, score, comment_count,
                   community, permalink, created_at, metadata)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(platform, id) DO UPDATE SET
    title = excluded.title,
    content = excluded.content,
    score = excluded.score,
    comment_count = excluded.comment_count,
    metadata = excluded.metadata,
    scraped_at = CURRENT_TIMESTAMP
"""

_COMMENT_SQL = """
INSERT INTO comments (id, platform, post_id, parent_id, author, content, score, depth, created_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(platform, id) DO UPDATE SET
    content = excluded.content,
    score = excluded.score,
    scraped_at = CURRENT_TIMESTAMP
"""

_USER_SQL = """
INSERT INTO users (id, platform, username, karma, about, created_at)
VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT(platform, id) DO UPDATE SET
    karma = excluded.karma,
    about = excluded.about,
    scraped_at = CURRENT_TIMESTAMP
"""


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


class SQLiteStorage:
    """Upserting SQLite sink. One transaction per batch."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "sqlite"

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=5.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")  # Safe with WAL
            conn.execute("PRAGMA busy_timeout = 5000")
            conn.executescript(SCHEMA)
            self._conn = conn
        return self._conn

    @staticmethod
    def _existing(conn: sqlite3.Connection, table: str, keys: Sequence[tuple[str, str]]) -> int:
        count = 0
        for platform, item_id in keys:
            row = conn.execute(
                f"SELECT 1 FROM {table} WHERE platform = ? AND id = ?", (platform, item_id)
            ).fetchone()
            if row is not None:
                count += 1
        return count

    def _commit(self, posts: list[ForumPost], comments: list[Comment], users: list[User]) -> SaveResult:
        conn = self._get_conn()
        post_keys = [(p.platform.value, p.id) for p in posts]
        comment_keys = [(c.platform.value, c.id) for c in comments]
        user_keys = [(u.platform.value, u.id) for u in users]

        with conn:  # One transaction: commit on success, rollback on error
            updated = (
                self._existing(conn, "posts", post_keys)
                + self._existing(conn, "comments", comment_keys)
                + self._existing(conn, "users", user_keys)
            )
            conn.executemany(
                _POST_SQL,
                [
                    (
                        p.id,
                        p.platform.value,
                        p.title,
                        p.author,
                        p.url,
                        p.content,
                        p.score,
                        p.comment_count,
                        p.community,
                        p.permalink,
                        _iso(p.created_at),
                        json.dumps(p.metadata, ensure_ascii=False, default=str),
                    )
                    for p in posts
                ],
            )
            conn.executemany(
                _COMMENT_SQL,
                [
                    (
                        c.id,
                        c.platform.value,
                        c.post_id,
                        c.parent_id,
                        c.author,
                        c.content,
                        c.score,
                        c.depth,
                        _iso(c.created_at),
                    )
                    for c in comments
                ],
            )
            conn.executemany(
                _USER_SQL,
                [
                    (u.id, u.platform.value, u.username, u.karma, u.about, _iso(u.created_at))
                    for u in users
                ],
            )

        total = len(posts) + len(comments) + len(users)
        return SaveResult(
            saved=total - updated,
            updated=updated,
            posts=len(posts),
            comments=len(comments),
            users=len(users),
        )

    async def commit_batch(
        self,
        posts: list[ForumPost],
        comments: list[Comment],
        users: list[User],
    ) -> SaveResult:
        # Single connection: serialize batches from concurrent sessions
        async with self._lock:
            try:
                result = await asyncio.to_thread(self._commit, posts, comments, users)
            except sqlite3.Error as e:
                logger.error(f"Batch commit failed: {e}")
                raise StorageError(f"Batch commit failed: {e}") from e
        logger.debug(
            f"Committed batch: {result.saved} new, {result.updated} updated",
            extra={"posts": result.posts, "comments": result.comments, "users": result.users},
        )
        return result

    def count(self, table: str) -> int:
        """Row count of posts, comments or users."""
        if table not in ("posts", "comments", "users"):
            raise ValueError(f"Unknown table: {table}")
        return self._get_conn().execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    async def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
