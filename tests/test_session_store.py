"""Tests for fscrape/session/store.py.

Every store implementation runs the same contract tests.
"""

import json
from datetime import timedelta

import pytest

from fscrape.core.errors import StorageError
from fscrape.core.types import Platform, SessionStatus, utcnow
from fscrape.session import (
    InMemorySessionStore,
    JSONFileSessionStore,
    Session,
    SessionStore,
    SQLiteSessionStore,
    cleanup_old_sessions,
    export_sessions,
    import_sessions,
)


@pytest.fixture(params=["memory", "json", "sqlite", "sqlite-memory"])
def any_store(request, tmp_path) -> SessionStore:
    if request.param == "memory":
        return InMemorySessionStore()
    if request.param == "json":
        return JSONFileSessionStore(tmp_path / "sessions")
    if request.param == "sqlite-memory":
        return SQLiteSessionStore(":memory:")
    return SQLiteSessionStore(tmp_path / "fscrape.db")


def make_session(
    status: SessionStatus = SessionStatus.PENDING,
    platform: Platform = Platform.HACKERNEWS,
    **kwargs,
) -> Session:
    query_type = "top" if platform == Platform.HACKERNEWS else "frontpage"
    return Session(platform=platform, query_type=query_type, status=status, **kwargs)


# =============================================================================
# Store contract
# =============================================================================


class TestSessionStoreContract:
    """Tests shared by every SessionStore."""

    def test_implements_protocol(self, any_store):
        """Each store satisfies the SessionStore protocol."""
        assert isinstance(any_store, SessionStore)

    @pytest.mark.asyncio
    async def test_save_and_load(self, any_store):
        """A saved session loads back with the same fields."""
        session = make_session(target_item_count=50, scraped_item_count=20, resume_token="t2")

        await any_store.save(session)
        loaded = await any_store.load(session.id)

        assert loaded is not None
        assert loaded.to_dict() == session.to_dict()

    @pytest.mark.asyncio
    async def test_load_missing(self, any_store):
        """Unknown ids load as None."""
        assert await any_store.load("missing") is None

    @pytest.mark.asyncio
    async def test_save_overwrites(self, any_store):
        """A second save replaces the first."""
        session = make_session()
        await any_store.save(session)

        session.transition(SessionStatus.RUNNING)
        session.resume_token = "t9"
        await any_store.save(session)

        loaded = await any_store.load(session.id)
        assert loaded.status == SessionStatus.RUNNING
        assert loaded.resume_token == "t9"

    @pytest.mark.asyncio
    async def test_loaded_copy_is_detached(self, any_store):
        """Mutating a loaded session does not change the store."""
        session = make_session()
        await any_store.save(session)

        loaded = await any_store.load(session.id)
        loaded.scraped_item_count = 999

        assert (await any_store.load(session.id)).scraped_item_count == 0

    @pytest.mark.asyncio
    async def test_list_active(self, any_store):
        """Only running and paused sessions are active."""
        running = make_session(SessionStatus.RUNNING)
        paused = make_session(SessionStatus.PAUSED)
        for session in (make_session(), running, paused, make_session(SessionStatus.COMPLETED)):
            await any_store.save(session)

        active = await any_store.list_active()

        assert {s.id for s in active} == {running.id, paused.id}

    @pytest.mark.asyncio
    async def test_list_sessions_filters(self, any_store):
        """Status and platform filters combine; newest first."""
        old = make_session(SessionStatus.FAILED, created_at=utcnow() - timedelta(hours=2))
        new = make_session(SessionStatus.FAILED)
        reddit = make_session(SessionStatus.FAILED, platform=Platform.REDDIT)
        for session in (old, new, reddit, make_session()):
            await any_store.save(session)

        failed_hn = await any_store.list_sessions(status=SessionStatus.FAILED, platform=Platform.HACKERNEWS)
        limited = await any_store.list_sessions(limit=2)

        assert [s.id for s in failed_hn] == [new.id, old.id]
        assert len(limited) == 2

    @pytest.mark.asyncio
    async def test_delete(self, any_store):
        """delete reports whether something was removed."""
        session = make_session()
        await any_store.save(session)

        assert await any_store.delete(session.id) is True
        assert await any_store.delete(session.id) is False
        assert await any_store.load(session.id) is None


# =============================================================================
# Backend specifics
# =============================================================================


class TestJSONFileSessionStore:
    """Tests for the one-file-per-session store."""

    @pytest.mark.asyncio
    async def test_writes_json_file(self, tmp_path):
        """Each session is a readable JSON document."""
        store = JSONFileSessionStore(tmp_path)
        session = make_session(resume_token="t1")

        await store.save(session)

        data = json.loads((tmp_path / f"{session.id}.json").read_text())
        assert data["resume_token"] == "t1"
        assert not list(tmp_path.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_skips_corrupt_files(self, tmp_path):
        """Unreadable files are skipped when listing."""
        store = JSONFileSessionStore(tmp_path)
        await store.save(make_session(SessionStatus.PAUSED))
        (tmp_path / "broken.json").write_text("{not json")

        assert len(await store.list_sessions()) == 1


class TestSQLiteSessionStore:
    """Tests for the SQLite session table."""

    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_path):
        """A new store on the same file sees saved sessions."""
        path = tmp_path / "sessions.db"
        session = make_session(SessionStatus.PAUSED, resume_token="t4")
        await SQLiteSessionStore(path).save(session)

        loaded = await SQLiteSessionStore(path).load(session.id)

        assert loaded.resume_token == "t4"
        assert loaded.status == SessionStatus.PAUSED

    @pytest.mark.asyncio
    async def test_storage_error_on_bad_path(self, tmp_path):
        """Database failures surface as StorageError."""
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("")
        store = SQLiteSessionStore(blocker / "fscrape.db")

        with pytest.raises(StorageError):
            await store.save(make_session())

    @pytest.mark.asyncio
    async def test_in_memory_database_keeps_sessions(self):
        """A ":memory:" store keeps its table across calls until closed."""
        store = SQLiteSessionStore(":memory:")
        session = make_session(SessionStatus.RUNNING, resume_token="t2")

        await store.save(session)
        await store.save(make_session(SessionStatus.COMPLETED))

        loaded = await store.load(session.id)
        assert loaded.resume_token == "t2"
        assert [s.id for s in await store.list_active()] == [session.id]
        assert len(await store.list_sessions()) == 2
        assert await store.delete(session.id) is True
        assert await store.load(session.id) is None

        store.close()
        assert await store.list_sessions() == []


# =============================================================================
# Backup and maintenance
# =============================================================================


class TestBackup:
    """Tests for export/import and cleanup."""

    @pytest.mark.asyncio
    async def test_export_import(self, tmp_path):
        """Exported sessions import into an empty store."""
        source = InMemorySessionStore()
        sessions = [make_session(SessionStatus.PAUSED), make_session(SessionStatus.COMPLETED)]
        for session in sessions:
            await source.save(session)
        backup = tmp_path / "backup.json"

        assert await export_sessions(source, backup) == 2

        target = InMemorySessionStore()
        assert await import_sessions(target, backup) == 2
        assert {s.id for s in await target.list_sessions()} == {s.id for s in sessions}

    @pytest.mark.asyncio
    async def test_export_by_status(self, tmp_path):
        """Export can be limited to one status."""
        store = InMemorySessionStore()
        await store.save(make_session(SessionStatus.PAUSED))
        await store.save(make_session(SessionStatus.COMPLETED))

        assert await export_sessions(store, tmp_path / "b.json", status=SessionStatus.PAUSED) == 1

    @pytest.mark.asyncio
    async def test_import_keeps_existing(self, tmp_path):
        """Existing sessions are kept unless overwrite is set."""
        store = InMemorySessionStore()
        session = make_session(SessionStatus.PAUSED, resume_token="old")
        await store.save(session)
        backup = tmp_path / "backup.json"
        await export_sessions(store, backup)

        session.resume_token = "new"
        await store.save(session)

        assert await import_sessions(store, backup) == 0
        assert (await store.load(session.id)).resume_token == "new"
        assert await import_sessions(store, backup, overwrite=True) == 1
        assert (await store.load(session.id)).resume_token == "old"

    @pytest.mark.asyncio
    async def test_import_rejects_unknown_version(self, tmp_path):
        """Backups with another format version are refused."""
        backup = tmp_path / "backup.json"
        backup.write_text(json.dumps({"version": 99, "sessions": []}))

        with pytest.raises(StorageError):
            await import_sessions(InMemorySessionStore(), backup)

    @pytest.mark.asyncio
    async def test_cleanup_old_terminal_sessions(self):
        """Only old terminal sessions are deleted."""
        store = InMemorySessionStore()
        long_ago = utcnow() - timedelta(days=60)
        old_done = make_session(SessionStatus.COMPLETED, completed_at=long_ago, created_at=long_ago)
        old_paused = make_session(SessionStatus.PAUSED, created_at=long_ago, last_activity_at=long_ago)
        recent_done = make_session(SessionStatus.FAILED, completed_at=utcnow())
        for session in (old_done, old_paused, recent_done):
            await store.save(session)

        deleted = await cleanup_old_sessions(store, timedelta(days=30))

        assert deleted == 1
        assert await store.load(old_done.id) is None
        assert await store.load(old_paused.id) is not None
        assert await store.load(recent_done.id) is not None
