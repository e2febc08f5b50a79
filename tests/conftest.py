"""Pytest configuration and shared fixtures.

Fakes used across the suite:
- FakeClock: monotonic clock whose sleep advances time instantly
- ScriptedClient: PlatformClient that replays pages or raises errors
- RecordingSink: PersistenceSink that records committed batches
"""

import asyncio
import random
from typing import Awaitable, Callable

import pytest

from fscrape.config import PlatformLimits
from fscrape.core.errors import StorageError
from fscrape.core.types import Comment, ForumPost, Page, Platform, User
from fscrape.session import InMemorySessionStore, SessionManager
from fscrape.storage import SaveResult


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        # Let other tasks run, as a real sleep would
        await asyncio.sleep(0)


def make_posts(count: int, start: int = 0, platform: Platform = Platform.HACKERNEWS) -> list[ForumPost]:
    """Posts with ids p{start}..p{start+count-1}."""
    return [
        ForumPost(id=f"p{i}", platform=platform, title=f"Post {i}", author=f"user{i % 3}")
        for i in range(start, start + count)
    ]


def make_pages(
    pages: int,
    per_page: int,
    platform: Platform = Platform.HACKERNEWS,
    last_has_more: bool = False,
) -> list[Page]:
    """Consecutive pages whose tokens are t1, t2, ... (the last one may end the listing)."""
    result = []
    for n in range(pages):
        is_last = n == pages - 1
        has_more = last_has_more or not is_last
        result.append(
            Page(
                items=make_posts(per_page, start=n * per_page, platform=platform),
                next_resume_token=f"t{n + 1}" if has_more else None,
                has_more=has_more,
            )
        )
    return result


class ScriptedClient:
    """Platform client that replays a script of pages and exceptions.

    An exhausted script returns an empty final page.
    """

    def __init__(
        self,
        script: list[Page | BaseException] | None = None,
        platform: Platform = Platform.HACKERNEWS,
        before_fetch: Callable[[int], Awaitable[None]] | None = None,
    ) -> None:
        self.script = list(script or [])
        self._platform = platform
        self.before_fetch = before_fetch
        self.calls: list[tuple[str | None, int]] = []
        self.closed = False

    @property
    def platform(self) -> Platform:
        return self._platform

    async def fetch_page(self, resume_token: str | None, page_size: int) -> Page:
        self.calls.append((resume_token, page_size))
        if self.before_fetch is not None:
            await self.before_fetch(len(self.calls))
        if not self.script:
            return Page(items=[], next_resume_token=None, has_more=False)
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        return step

    async def close(self) -> None:
        self.closed = True

    @property
    def tokens(self) -> list[str | None]:
        return [token for token, _ in self.calls]


class ListingClient(ScriptedClient):
    """Serves a fixed listing by token: None is page 0, "tN" is page N."""

    def __init__(self, pages: list[Page], **kwargs) -> None:
        super().__init__(**kwargs)
        self.pages = pages

    async def fetch_page(self, resume_token: str | None, page_size: int) -> Page:
        self.calls.append((resume_token, page_size))
        if self.before_fetch is not None:
            await self.before_fetch(len(self.calls))
        index = 0 if resume_token is None else int(resume_token[1:])
        return self.pages[index]


class RecordingSink:
    """Sink that keeps every committed batch in memory."""

    def __init__(self, fail_on_batch: int | None = None) -> None:
        self.batches: list[tuple[list[ForumPost], list[Comment], list[User]]] = []
        self.fail_on_batch = fail_on_batch
        self.attempts = 0

    @property
    def name(self) -> str:
        return "recording"

    async def commit_batch(
        self,
        posts: list[ForumPost],
        comments: list[Comment],
        users: list[User],
    ) -> SaveResult:
        self.attempts += 1
        if self.fail_on_batch is not None and self.attempts == self.fail_on_batch:
            raise StorageError("disk full")
        self.batches.append((list(posts), list(comments), list(users)))
        return SaveResult(
            saved=len(posts) + len(comments) + len(users),
            posts=len(posts),
            comments=len(comments),
            users=len(users),
        )

    async def close(self) -> None:
        pass

    @property
    def item_ids(self) -> list[str]:
        return [item.id for batch in self.batches for group in batch for item in group]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def test_limits() -> PlatformLimits:
    """Generous windows, three retries, deterministic delays."""
    return PlatformLimits(
        max_requests_per_minute=1000,
        max_retries=3,
        initial_delay=1.0,
        max_delay=10.0,
        backoff_multiplier=2.0,
        jitter=0.0,
    )


@pytest.fixture
def make_manager(store, sink, clock, test_limits):
    """Factory for a SessionManager wired to fakes.

    Usage:
        manager = make_manager(ScriptedClient(make_pages(3, 10)))
    """

    def _make(client: ScriptedClient, **kwargs) -> SessionManager:
        kwargs.setdefault("limits", {client.platform: test_limits})
        kwargs.setdefault("page_size", 10)
        return SessionManager(
            kwargs.pop("store", store),
            kwargs.pop("sink", sink),
            kwargs.pop("client_factories", {client.platform: lambda session: client}),
            clock=clock,
            sleep=clock.sleep,
            rng=random.Random(42),
            **kwargs,
        )

    return _make
