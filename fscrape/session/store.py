"""Durable session stores.

Every store returns copies: mutating a loaded Session never changes
what is persisted until `save` is called again.
"""

from __future__ import annotations

import asyncio
import json
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Protocol, runtime_checkable

from ..core.errors import StorageError
from ..core.types import Platform, SessionStatus
from ..observability.logger import get_logger
from .state import Session

logger = get_logger(__name__)

EXPORT_FORMAT_VERSION = 1


@runtime_checkable
class SessionStore(Protocol):
    """Protocol for durable session persistence.

    `save` must not return before the record is durable.
    """

    async def save(self, session: Session) -> None: ...

    async def load(self, session_id: str) -> Session | None: ...

    async def list_active(self) -> list[Session]:
        """Running and paused sessions, for crash-resume discovery."""
        ...

    async def list_sessions(
        self,
        status: SessionStatus | None = None,
        platform: Platform | None = None,
        limit: int | None = None,
    ) -> list[Session]: ...

    async def delete(self, session_id: str) -> bool: ...


def _matches(session: Session, status: SessionStatus | None, platform: Platform | None) -> bool:
    if status is not None and session.status != status:
        return False
    if platform is not None and session.platform != platform:
        return False
    return True


def _newest_first(sessions: list[Session], limit: int | None) -> list[Session]:
    sessions.sort(key=lambda s: s.created_at, reverse=True)
    return sessions[:limit] if limit is not None else sessions


class InMemorySessionStore:
    """Process-lifetime store for tests and throwaway runs."""

    def __init__(self) -> None:
        self._sessions: dict[str, dict[str, Any]] = {}
        self.save_count = 0

    async def save(self, session: Session) -> None:
        self._sessions[session.id] = session.to_dict()
        self.save_count += 1

    async def load(self, session_id: str) -> Session | None:
        data = self._sessions.get(session_id)
        return Session.from_dict(data) if data is not None else None

    async def list_active(self) -> list[Session]:
        return [
            Session.from_dict(d)
            for d in self._sessions.values()
            if SessionStatus(d["status"]).is_active
        ]

    async def list_sessions(
        self,
        status: SessionStatus | None = None,
        platform: Platform | None = None,
        limit: int | None = None,
    ) -> list[Session]:
        sessions = [Session.from_dict(d) for d in self._sessions.values()]
        return _newest_first([s for s in sessions if _matches(s, status, platform)], limit)

    async def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None


class JSONFileSessionStore:
    """One JSON file per session in a directory.

    Uses write-to-temp, fsync, then rename for atomic writes.
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    def _path(self, session_id: str) -> Path:
        return self.directory / f"{session_id}.json"

    def _write(self, session: Session) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(session.id)
        tmp_file = path.with_suffix(".tmp")

        try:
            with open(tmp_file, "w", encoding="utf-8") as f:
                json.dump(session.to_dict(), f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            os.replace(tmp_file, path)
        except OSError as e:
            logger.error(f"Failed to save session {session.id}: {e}")
            if tmp_file.exists():
                tmp_file.unlink()
            raise StorageError(f"Failed to save session {session.id}: {e}", session_id=session.id) from e

    def _read(self, path: Path) -> Session | None:
        try:
            with open(path, encoding="utf-8") as f:
                return Session.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Skipping unreadable session file {path.name}: {e}")
            return None

    def _read_all(self) -> list[Session]:
        if not self.directory.exists():
            return []
        sessions = []
        for path in sorted(self.directory.glob("*.json")):
            session = self._read(path)
            if session is not None:
                sessions.append(session)
        return sessions

    async def save(self, session: Session) -> None:
        await asyncio.to_thread(self._write, session)

    async def load(self, session_id: str) -> Session | None:
        return await asyncio.to_thread(self._read, self._path(session_id))

    async def list_active(self) -> list[Session]:
        sessions = await asyncio.to_thread(self._read_all)
        return [s for s in sessions if s.status.is_active]

    async def list_sessions(
        self,
        status: SessionStatus | None = None,
        platform: Platform | None = None,
        limit: int | None = None,
    ) -> list[Session]:
        sessions = await asyncio.to_thread(self._read_all)
        return _newest_first([s for s in sessions if _matches(s, status, platform)], limit)

    async def delete(self, session_id: str) -> bool:
        def _unlink() -> bool:
            try:
                self._path(session_id).unlink()
                return True
            except FileNotFoundError:
                return False

        return await asyncio.to_thread(_unlink)


SESSIONS_SCHEMA = """
CREATE TABLE IF NOT EXISTS scraping_sessions (
    session_id TEXT PRIMARY KEY,
    platform TEXT NOT NULL,
    query_type TEXT NOT NULL,
    query_value TEXT,
    status TEXT NOT NULL,
    total_items_target INTEGER,
    total_items_scraped INTEGER NOT NULL DEFAULT 0,
    total_posts INTEGER NOT NULL DEFAULT 0,
    total_comments INTEGER NOT NULL DEFAULT 0,
    total_users INTEGER NOT NULL DEFAULT 0,
    last_item_id TEXT,
    resume_token TEXT,
    error_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    last_activity_at TEXT,
    state_json TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sessions_status ON scraping_sessions(status);
CREATE INDEX IF NOT EXISTS idx_sessions_platform ON scraping_sessions(platform);
"""

_UPSERT_SQL = """
INSERT INTO scraping_sessions (
    session_id, platform, query_type, query_value, status,
    total_items_target, total_items_scraped, total_posts, total_comments, total_users,
    last_item_id, resume_token, error_count, last_error,
    created_at, started_at, completed_at, last_activity_at, state_json
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(session_id) DO UPDATE SET
    status = excluded.status,
    total_items_scraped = excluded.total_items_scraped,
    total_posts = excluded.total_posts,
    total_comments = excluded.total_comments,
    total_users = excluded.total_users,
    last_item_id = excluded.last_item_id,
    resume_token = excluded.resume_token,
    error_count = excluded.error_count,
    last_error = excluded.last_error,
    started_at = excluded.started_at,
    completed_at = excluded.completed_at,
    last_activity_at = excluded.last_activity_at,
    state_json = excluded.state_json
"""


class SQLiteSessionStore:
    """Sessions in the scraping_sessions table of a SQLite database.

    Blocking sqlite3 calls run in worker threads. Each call opens its
    own connection, so the store is safe to share across tasks. A
    ":memory:" database exists only while its connection is open, so
    that store keeps a single connection and serializes calls on it.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self._initialized = False
        self._in_memory = str(db_path) == ":memory:"
        self._shared: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        if not self._in_memory:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=5.0, check_same_thread=not self._in_memory)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = FULL")  # Checkpoints must survive power loss
        conn.execute("PRAGMA busy_timeout = 5000")
        if not self._initialized:
            conn.executescript(SESSIONS_SCHEMA)
            self._initialized = True
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if not self._in_memory:
            conn = self._connect()
            try:
                yield conn
            finally:
                conn.close()
            return
        with self._lock:
            if self._shared is None:
                self._shared = self._connect()
            yield self._shared

    def close(self) -> None:
        """Drop the shared connection of an in-memory store (and its data)."""
        with self._lock:
            if self._shared is not None:
                self._shared.close()
                self._shared = None
                self._initialized = False

    def _run(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            with self._connection() as conn:
                with conn:
                    return conn.execute(sql, params).fetchall()
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Session store error: {e}") from e

    @staticmethod
    def _row_params(session: Session) -> tuple:
        d = session.to_dict()
        return (
            d["id"],
            d["platform"],
            d["query_type"],
            d["query_value"],
            d["status"],
            d["target_item_count"],
            d["scraped_item_count"],
            d["post_count"],
            d["comment_count"],
            d["user_count"],
            d["last_item_id"],
            d["resume_token"],
            d["error_count"],
            d["last_error"],
            d["created_at"],
            d["started_at"],
            d["completed_at"],
            d["last_activity_at"],
            json.dumps(d, ensure_ascii=False),
        )

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Session:
        return Session.from_dict(json.loads(row["state_json"]))

    async def save(self, session: Session) -> None:
        await asyncio.to_thread(self._run, _UPSERT_SQL, self._row_params(session))

    async def load(self, session_id: str) -> Session | None:
        rows = await asyncio.to_thread(
            self._run,
            "SELECT state_json FROM scraping_sessions WHERE session_id = ?",
            (session_id,),
        )
        return self._from_row(rows[0]) if rows else None

    async def list_active(self) -> list[Session]:
        rows = await asyncio.to_thread(
            self._run,
            "SELECT state_json FROM scraping_sessions WHERE status IN (?, ?) ORDER BY created_at",
            (SessionStatus.RUNNING.value, SessionStatus.PAUSED.value),
        )
        return [self._from_row(r) for r in rows]

    async def list_sessions(
        self,
        status: SessionStatus | None = None,
        platform: Platform | None = None,
        limit: int | None = None,
    ) -> list[Session]:
        clauses = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if platform is not None:
            clauses.append("platform = ?")
            params.append(platform.value)
        sql = "SELECT state_json FROM scraping_sessions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._run, sql, tuple(params))
        return [self._from_row(r) for r in rows]

    async def delete(self, session_id: str) -> bool:
        def _delete() -> bool:
            with self._connection() as conn:
                with conn:
                    cursor = conn.execute(
                        "DELETE FROM scraping_sessions WHERE session_id = ?", (session_id,)
                    )
                return cursor.rowcount > 0

        try:
            return await asyncio.to_thread(_delete)
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Session store error: {e}", session_id=session_id) from e


# === Backup / maintenance ===


async def export_sessions(
    store: SessionStore,
    path: Path | str,
    status: SessionStatus | None = None,
) -> int:
    """Write sessions to a versioned JSON backup file.

    Returns:
        Number of sessions exported
    """
    sessions = await store.list_sessions(status=status)
    payload = {
        "version": EXPORT_FORMAT_VERSION,
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "sessions": [s.to_dict() for s in sessions],
    }
    path = Path(path)

    def _write() -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_file, path)

    await asyncio.to_thread(_write)
    logger.info(f"Exported {len(sessions)} sessions to {path}")
    return len(sessions)


async def import_sessions(store: SessionStore, path: Path | str, overwrite: bool = False) -> int:
    """Restore sessions from a backup written by export_sessions.

    Existing sessions are kept unless `overwrite` is set.

    Returns:
        Number of sessions written to the store
    """
    path = Path(path)

    def _read() -> dict[str, Any]:
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    try:
        payload = await asyncio.to_thread(_read)
    except (OSError, ValueError) as e:
        raise StorageError(f"Cannot read session backup {path}: {e}") from e

    version = payload.get("version")
    if version != EXPORT_FORMAT_VERSION:
        raise StorageError(f"Unsupported session backup version: {version!r}")

    imported = 0
    for data in payload.get("sessions", []):
        session = Session.from_dict(data)
        if not overwrite and await store.load(session.id) is not None:
            logger.debug(f"Skipping existing session {session.id}")
            continue
        await store.save(session)
        imported += 1

    logger.info(f"Imported {imported} sessions from {path}")
    return imported


async def cleanup_old_sessions(store: SessionStore, older_than: timedelta) -> int:
    """Delete terminal sessions whose last activity is older than the cutoff.

    Returns:
        Number of sessions deleted
    """
    cutoff = datetime.now(timezone.utc) - older_than
    deleted = 0
    for session in await store.list_sessions():
        if not session.is_terminal:
            continue
        last_seen = session.completed_at or session.last_activity_at or session.created_at
        if last_seen < cutoff and await store.delete(session.id):
            deleted += 1
    if deleted:
        logger.info(f"Deleted {deleted} sessions older than {older_than.days} days")
    return deleted
