"""Tests for fscrape/storage/sqlite_storage.py."""

import sqlite3
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from fscrape.core.errors import StorageError
from fscrape.core.types import Comment, ForumPost, Platform, User
from fscrape.storage import PersistenceSink, SaveResult, SQLiteStorage

from .conftest import make_posts


@pytest_asyncio.fixture
async def storage(tmp_path):
    sink = SQLiteStorage(tmp_path / "data" / "fscrape.db")
    yield sink
    await sink.close()


# =============================================================================
# SaveResult
# =============================================================================


class TestSaveResult:
    """Tests for the commit result record."""

    def test_total_and_merge(self):
        """merge() adds every counter."""
        a = SaveResult(saved=2, updated=1, posts=3)
        b = SaveResult(saved=1, comments=1, errors=["x"])

        merged = a.merge(b)

        assert merged.total == 4
        assert merged.posts == 3
        assert merged.comments == 1
        assert merged.has_errors is True


# =============================================================================
# SQLiteStorage
# =============================================================================


class TestSQLiteStorage:
    """Tests for the upserting SQLite sink."""

    def test_implements_protocol(self, tmp_path):
        """SQLiteStorage satisfies PersistenceSink."""
        assert isinstance(SQLiteStorage(tmp_path / "x.db"), PersistenceSink)

    @pytest.mark.asyncio
    async def test_commit_mixed_batch(self, storage):
        """Posts, comments and users land in their own tables."""
        created = datetime(2024, 5, 1, tzinfo=timezone.utc)
        post = ForumPost(id="p1", platform=Platform.REDDIT, title="Hello", created_at=created)
        comment = Comment(id="c1", post_id="p1", platform=Platform.REDDIT, content="hi", depth=1)
        user = User(id="u1", username="alice", platform=Platform.REDDIT, karma=10)

        result = await storage.commit_batch([post], [comment], [user])

        assert result.saved == 3
        assert result.updated == 0
        assert (result.posts, result.comments, result.users) == (1, 1, 1)
        assert storage.count("posts") == 1
        assert storage.count("comments") == 1
        assert storage.count("users") == 1

    @pytest.mark.asyncio
    async def test_recommit_is_idempotent(self, storage):
        """Committing the same items again updates instead of duplicating."""
        posts = make_posts(5)
        await storage.commit_batch(posts, [], [])

        posts[0].score = 99
        result = await storage.commit_batch(posts[:3], [], [])

        assert result.saved == 0
        assert result.updated == 3
        assert storage.count("posts") == 5

    @pytest.mark.asyncio
    async def test_same_id_on_two_platforms(self, storage):
        """Rows are keyed by platform and id."""
        await storage.commit_batch(make_posts(1, platform=Platform.REDDIT), [], [])
        result = await storage.commit_batch(make_posts(1, platform=Platform.HACKERNEWS), [], [])

        assert result.saved == 1
        assert storage.count("posts") == 2

    @pytest.mark.asyncio
    async def test_empty_batch(self, storage):
        """An empty batch commits nothing."""
        result = await storage.commit_batch([], [], [])

        assert result.total == 0

    @pytest.mark.asyncio
    async def test_failed_batch_keeps_nothing(self, storage):
        """A failing batch is rolled back and raises StorageError."""
        good = make_posts(2)
        bad = ForumPost(id="p9", platform=Platform.HACKERNEWS, title=None)  # NOT NULL title

        with pytest.raises(StorageError):
            await storage.commit_batch(good + [bad], [], [])

        assert storage.count("posts") == 0

    def test_count_rejects_unknown_table(self, tmp_path):
        """count() only accepts the item tables."""
        with pytest.raises(ValueError):
            SQLiteStorage(tmp_path / "x.db").count("sessions")

    @pytest.mark.asyncio
    async def test_rows_readable_after_close(self, tmp_path):
        """Committed rows are on disk after close()."""
        path = tmp_path / "fscrape.db"
        sink = SQLiteStorage(path)
        await sink.commit_batch(make_posts(3), [], [])
        await sink.close()

        with sqlite3.connect(path) as conn:
            ids = [row[0] for row in conn.execute("SELECT id FROM posts ORDER BY id")]

        assert ids == ["p0", "p1", "p2"]
