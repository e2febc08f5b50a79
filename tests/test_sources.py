"""Tests for fscrape/sources (Reddit and HackerNews clients).

HTTP is mocked at the aiohttp session level.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from fscrape.config.constants import HACKERNEWS_BASE_URL, REDDIT_BASE_URL
from fscrape.core.errors import (
    HTTPStatusError,
    InvalidConfigError,
    MalformedRequestError,
    RateLimitError,
    ValidationError,
)
from fscrape.core.types import Comment, ForumPost, Platform, User
from fscrape.sources import HackerNewsClient, PlatformClient, RedditClient, create_client


def mock_response(payload=None, status: int = 200, headers: dict | None = None, json_error=None):
    """Async context manager standing in for an aiohttp response."""
    response = AsyncMock()
    response.status = status
    response.headers = headers or {}
    response.json = AsyncMock(return_value=payload, side_effect=json_error)
    response.text = AsyncMock(return_value="error body")
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=None)
    return response


def mock_session(routes: dict[str, object]) -> MagicMock:
    """Session whose get() answers by full URL."""
    session = MagicMock()
    session.closed = False

    def get(url, params=None):
        return routes[url]

    session.get = MagicMock(side_effect=get)
    return session


def reddit_listing(ids: list[str], after: str | None) -> dict:
    return {
        "kind": "Listing",
        "data": {
            "after": after,
            "children": [
                {
                    "kind": "t3",
                    "data": {
                        "id": i,
                        "title": f"Post {i}",
                        "author": f"user_{i}",
                        "score": 10,
                        "num_comments": 2,
                        "created_utc": 1700000000,
                        "subreddit": "python",
                        "permalink": f"/r/python/comments/{i}/",
                        "upvote_ratio": 0.9,
                    },
                }
                for i in ids
            ],
        },
    }


def hn_item(item_id: int, **kwargs) -> dict:
    data = {"id": item_id, "type": "story", "title": f"Story {item_id}", "by": "pg", "time": 1700000000}
    data.update(kwargs)
    return data


# =============================================================================
# RedditClient
# =============================================================================


class TestRedditClient:
    """Tests for the Reddit listing client."""

    @pytest.mark.asyncio
    async def test_fetch_subreddit_page(self):
        """A listing becomes posts plus the `after` token."""
        url = f"{REDDIT_BASE_URL}/r/python/new.json"
        session = mock_session({url: mock_response(reddit_listing(["a1", "a2"], after="t3_a2"))})
        client = RedditClient("subreddit", "python", session=session)

        page = await client.fetch_page(None, 25)

        assert [p.id for p in page.posts] == ["a1", "a2"]
        assert page.next_resume_token == "t3_a2"
        assert page.has_more is True
        post = page.posts[0]
        assert post.platform == Platform.REDDIT
        assert post.community == "python"
        assert post.metadata == {"upvote_ratio": 0.9}
        assert post.created_at is not None
        session.get.assert_called_once_with(url, params={"raw_json": 1, "limit": 25})

    @pytest.mark.asyncio
    async def test_resume_token_passed_as_after(self):
        """The resume token is sent back as `after`; page size is capped."""
        url = f"{REDDIT_BASE_URL}/search.json"
        session = mock_session({url: mock_response(reddit_listing([], after=None))})
        client = RedditClient("search", "asyncio", sort="top", time_range="week", session=session)

        page = await client.fetch_page("t3_xyz", 500)

        params = session.get.call_args.kwargs["params"]
        assert params["after"] == "t3_xyz"
        assert params["limit"] == 100
        assert params["q"] == "asyncio"
        assert params["t"] == "week"
        assert page.items == []
        assert page.has_more is False

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        """429 raises RateLimitError with Retry-After."""
        url = f"{REDDIT_BASE_URL}/new.json"
        session = mock_session({url: mock_response(status=429, headers={"Retry-After": "7"})})
        client = RedditClient("frontpage", session=session)

        with pytest.raises(RateLimitError) as exc_info:
            await client.fetch_page(None, 10)

        assert exc_info.value.retry_after == 7.0
        assert exc_info.value.platform == "reddit"

    @pytest.mark.asyncio
    async def test_not_found(self):
        """404 raises a non-retryable HTTPStatusError."""
        url = f"{REDDIT_BASE_URL}/r/nope/new.json"
        session = mock_session({url: mock_response(status=404)})
        client = RedditClient("subreddit", "nope", session=session)

        with pytest.raises(HTTPStatusError) as exc_info:
            await client.fetch_page(None, 10)

        assert exc_info.value.status_code == 404
        assert exc_info.value.is_retryable is False

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        """An undecodable body is a ValidationError."""
        url = f"{REDDIT_BASE_URL}/r/python/new.json"
        session = mock_session({url: mock_response(json_error=ValueError("bad json"))})
        client = RedditClient("subreddit", "python", session=session)

        with pytest.raises(ValidationError):
            await client.fetch_page(None, 10)

    @pytest.mark.asyncio
    async def test_unexpected_shape(self):
        """A payload without listing data is a ValidationError."""
        url = f"{REDDIT_BASE_URL}/r/python/new.json"
        session = mock_session({url: mock_response(["not", "a", "listing"])})
        client = RedditClient("subreddit", "python", session=session)

        with pytest.raises(ValidationError):
            await client.fetch_page(None, 10)

    @pytest.mark.parametrize(
        "kwargs",
        [{"sort": "best"}, {"time_range": "decade"}],
    )
    def test_invalid_options(self, kwargs):
        """Unknown sort or time range is a malformed request."""
        with pytest.raises(MalformedRequestError):
            RedditClient("subreddit", "python", **kwargs)

    @pytest.mark.asyncio
    async def test_comments_and_users(self):
        """Follow-up requests add comments and authors and are paced."""
        listing_url = f"{REDDIT_BASE_URL}/r/python/new.json"
        comments_payload = [
            {},
            {
                "data": {
                    "children": [
                        {"kind": "t1", "data": {"id": "c1", "body": "nice", "author": "bob", "depth": 0}},
                        {"kind": "more", "data": {}},
                    ]
                }
            },
        ]
        session = mock_session(
            {
                listing_url: mock_response(reddit_listing(["a1"], after=None)),
                f"{REDDIT_BASE_URL}/comments/a1.json": mock_response(comments_payload),
                f"{REDDIT_BASE_URL}/user/user_a1/about.json": mock_response(
                    {"data": {"id": "u1", "name": "user_a1", "link_karma": 5, "comment_karma": 7}}
                ),
                f"{REDDIT_BASE_URL}/user/bob/about.json": mock_response(status=404),
            }
        )
        limiter = MagicMock()
        limiter.acquire = AsyncMock()
        client = RedditClient(
            "subreddit",
            "python",
            include_comments=True,
            include_users=True,
            request_limiter=limiter,
            session=session,
        )

        page = await client.fetch_page(None, 10)

        assert [type(i) for i in page.items] == [ForumPost, Comment, User]
        assert page.comments[0].post_id == "a1"
        assert page.users[0].karma == 12
        # comments + two user lookups; the listing itself is not paced here
        assert limiter.acquire.await_count == 3

    @pytest.mark.asyncio
    async def test_close_keeps_injected_session(self):
        """close() does not close a session the client did not create."""
        session = mock_session({})
        session.close = AsyncMock()
        client = RedditClient("frontpage", session=session)

        await client.close()

        session.close.assert_not_awaited()


# =============================================================================
# HackerNewsClient
# =============================================================================


class TestHackerNewsClient:
    """Tests for the HackerNews Firebase client."""

    def routes(self, ids: list[int], items: dict[int, dict | None]) -> dict:
        routes = {f"{HACKERNEWS_BASE_URL}/topstories.json": mock_response(ids)}
        for item_id, data in items.items():
            routes[f"{HACKERNEWS_BASE_URL}/item/{item_id}.json"] = mock_response(data)
        return routes

    @pytest.mark.asyncio
    async def test_pages_by_offset(self):
        """Pages walk the id list; the token is the next offset."""
        session = mock_session(self.routes([1, 2, 3], {i: hn_item(i) for i in (1, 2, 3)}))
        client = HackerNewsClient("top", session=session)

        first = await client.fetch_page(None, 2)
        second = await client.fetch_page(first.next_resume_token, 2)

        assert [p.id for p in first.posts] == ["1", "2"]
        assert first.next_resume_token == "2"
        assert first.has_more is True
        assert [p.id for p in second.posts] == ["3"]
        assert second.next_resume_token is None
        assert second.has_more is False
        list_calls = [c for c in session.get.call_args_list if c.args[0].endswith("topstories.json")]
        assert len(list_calls) == 1

    @pytest.mark.asyncio
    async def test_skips_deleted_and_dead(self):
        """Deleted, dead and missing items are dropped."""
        items = {1: hn_item(1), 2: hn_item(2, deleted=True), 3: hn_item(3, dead=True), 4: None}
        session = mock_session(self.routes([1, 2, 3, 4], items))
        client = HackerNewsClient("top", session=session)

        page = await client.fetch_page(None, 10)

        assert [p.id for p in page.posts] == ["1"]
        assert page.has_more is False

    @pytest.mark.asyncio
    async def test_comments(self):
        """include_comments fetches the story's kids."""
        items = {1: hn_item(1, kids=[10]), 10: {"id": 10, "type": "comment", "parent": 1, "text": "hi"}}
        session = mock_session(self.routes([1], items))
        client = HackerNewsClient("top", include_comments=True, session=session)

        page = await client.fetch_page(None, 10)

        assert len(page.comments) == 1
        assert page.comments[0].post_id == "1"
        assert page.comments[0].parent_id == "1"

    @pytest.mark.asyncio
    async def test_user_submissions(self):
        """User queries page through the user's submitted ids."""
        session = mock_session(
            {
                f"{HACKERNEWS_BASE_URL}/user/pg.json": mock_response({"id": "pg", "submitted": [5]}),
                f"{HACKERNEWS_BASE_URL}/item/5.json": mock_response(hn_item(5)),
            }
        )
        client = HackerNewsClient("user", "pg", session=session)

        page = await client.fetch_page(None, 10)

        assert [p.id for p in page.posts] == ["5"]

    @pytest.mark.asyncio
    async def test_unknown_user(self):
        """A missing user is a malformed request."""
        session = mock_session({f"{HACKERNEWS_BASE_URL}/user/ghost.json": mock_response(None)})
        client = HackerNewsClient("user", "ghost", session=session)

        with pytest.raises(MalformedRequestError):
            await client.fetch_page(None, 10)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", ["abc", "-1"])
    async def test_invalid_token(self, token):
        """Non-numeric or negative offsets are rejected before any request."""
        session = mock_session({})
        client = HackerNewsClient("top", session=session)

        with pytest.raises(MalformedRequestError):
            await client.fetch_page(token, 10)

        session.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_server_error(self):
        """5xx raises a retryable HTTPStatusError."""
        session = mock_session({f"{HACKERNEWS_BASE_URL}/topstories.json": mock_response(status=503)})
        client = HackerNewsClient("top", session=session)

        with pytest.raises(HTTPStatusError) as exc_info:
            await client.fetch_page(None, 10)

        assert exc_info.value.is_retryable is True

    def test_unknown_query_type(self):
        """Only story lists and user are supported."""
        with pytest.raises(MalformedRequestError):
            HackerNewsClient("subreddit")


# =============================================================================
# create_client
# =============================================================================


class TestCreateClient:
    """Tests for the client factory."""

    def test_builds_platform_client(self):
        """The factory picks the class and forwards options."""
        reddit = create_client(Platform.REDDIT, "subreddit", "python", include_comments=True)
        hn = create_client(Platform.HACKERNEWS, "best", user_agent="test/1.0")

        assert isinstance(reddit, RedditClient)
        assert reddit.include_comments is True
        assert isinstance(hn, HackerNewsClient)
        assert hn.user_agent == "test/1.0"
        assert isinstance(hn, PlatformClient)

    def test_unknown_platform(self):
        """Unregistered platforms are a config error."""
        with pytest.raises(InvalidConfigError):
            create_client("myspace", "top")
