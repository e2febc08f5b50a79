"""
Reddit public JSON API client.

Reads listings without OAuth via the `.json` suffix endpoints.

Usage:
    from fscrape.sources import RedditClient

    async with RedditClient("subreddit", "python") as client:
        page = await client.fetch_page(None, 25)
        page = await client.fetch_page(page.next_resume_token, 25)

Resume token: Reddit's `after` fullname (e.g. "t3_abc123").
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from ..config.constants import MAX_PAGE_SIZE, REDDIT_BASE_URL
from ..core.errors import HTTPStatusError, MalformedRequestError
from ..core.types import Comment, ForumPost, Item, Page, Platform, User
from ..observability.logger import get_logger
from .base import BasePlatformClient

logger = get_logger(__name__)

_DELETED_AUTHORS = {"[deleted]", "[removed]", None}


def _ts(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


class RedditClient(BasePlatformClient):
    """Listing client for subreddits, search, user submissions and the front page."""

    BASE_URL = REDDIT_BASE_URL
    PLATFORM = Platform.REDDIT

    SORTS = ("hot", "new", "top", "rising", "controversial")
    TIME_RANGES = ("hour", "day", "week", "month", "year", "all")

    def __init__(
        self,
        query_type: str,
        query_value: str | None = None,
        *,
        sort: str = "new",
        time_range: str | None = None,
        include_comments: bool = False,
        include_users: bool = False,
        comment_limit: int = 50,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if sort not in self.SORTS:
            raise MalformedRequestError(f"Unknown Reddit sort: {sort}", platform="reddit")
        if time_range is not None and time_range not in self.TIME_RANGES:
            raise MalformedRequestError(f"Unknown Reddit time range: {time_range}", platform="reddit")
        self.query_type = query_type
        self.query_value = query_value
        self.sort = sort
        self.time_range = time_range
        self.include_comments = include_comments
        self.include_users = include_users
        self.comment_limit = comment_limit

    def _listing(self) -> tuple[str, dict[str, Any]]:
        params: dict[str, Any] = {"raw_json": 1}
        if self.time_range:
            params["t"] = self.time_range

        if self.query_type == "subreddit":
            return f"/r/{self.query_value}/{self.sort}.json", params
        if self.query_type == "search":
            params.update({"q": self.query_value, "sort": self.sort})
            return "/search.json", params
        if self.query_type == "user":
            params["sort"] = self.sort
            return f"/user/{self.query_value}/submitted.json", params
        if self.query_type == "frontpage":
            return f"/{self.sort}.json", params
        raise MalformedRequestError(f"Unknown Reddit query type: {self.query_type}", platform="reddit")

    async def fetch_page(self, resume_token: str | None, page_size: int) -> Page:
        path, params = self._listing()
        params["limit"] = max(1, min(page_size, MAX_PAGE_SIZE))
        if resume_token:
            params["after"] = resume_token

        payload = self._require(await self._get_json(path, params), dict, "listing")
        listing = self._require(payload.get("data"), dict, "listing.data")
        children = self._require(listing.get("children", []), list, "listing.children")

        posts = [
            self._parse_post(child.get("data", {}))
            for child in children
            if isinstance(child, dict) and child.get("kind") == "t3"
        ]

        items: list[Item] = list(posts)
        if self.include_comments:
            for post in posts:
                items.extend(await self._fetch_comments(post))
        if self.include_users:
            items.extend(await self._fetch_users(items))

        after = listing.get("after")
        return Page(items=items, next_resume_token=after, has_more=bool(after))

    def _parse_post(self, data: dict[str, Any]) -> ForumPost:
        return ForumPost(
            id=str(data.get("id") or data.get("name")),
            platform=Platform.REDDIT,
            title=data.get("title") or "",
            author=data.get("author"),
            url=data.get("url"),
            content=data.get("selftext") or None,
            score=int(data.get("score") or 0),
            comment_count=int(data.get("num_comments") or 0),
            created_at=_ts(data.get("created_utc")),
            community=data.get("subreddit"),
            permalink=data.get("permalink"),
            metadata={
                k: data[k]
                for k in ("upvote_ratio", "over_18", "is_self", "link_flair_text")
                if k in data
            },
        )

    async def _fetch_comments(self, post: ForumPost) -> list[Comment]:
        payload = await self._get_json(
            f"/comments/{post.id}.json",
            {"limit": self.comment_limit, "depth": 1, "raw_json": 1},
            follow_up=True,
        )
        if not isinstance(payload, list) or len(payload) < 2:
            return []
        children = (payload[1].get("data") or {}).get("children", [])
        comments = []
        for child in children:
            if child.get("kind") != "t1":
                continue
            data = child.get("data", {})
            comments.append(
                Comment(
                    id=str(data.get("id")),
                    post_id=post.id,
                    platform=Platform.REDDIT,
                    content=data.get("body") or "",
                    author=data.get("author"),
                    parent_id=data.get("parent_id"),
                    score=int(data.get("score") or 0),
                    depth=int(data.get("depth") or 0),
                    created_at=_ts(data.get("created_utc")),
                )
            )
        return comments

    async def _fetch_users(self, items: list[Item]) -> list[User]:
        names: list[str] = []
        for item in items:
            author = getattr(item, "author", None)
            if author not in _DELETED_AUTHORS and author not in names:
                names.append(author)

        users = []
        for name in names:
            try:
                payload = await self._get_json(f"/user/{name}/about.json", follow_up=True)
            except HTTPStatusError as e:
                if e.is_retryable:
                    raise
                # Suspended or shadowbanned accounts answer 403/404
                logger.debug(f"Skipping user {name}: HTTP {e.status_code}")
                continue
            data = payload.get("data") if isinstance(payload, dict) else None
            if not data:
                continue
            users.append(
                User(
                    id=str(data.get("id") or name),
                    username=data.get("name") or name,
                    platform=Platform.REDDIT,
                    karma=int(data.get("link_karma") or 0) + int(data.get("comment_karma") or 0),
                    created_at=_ts(data.get("created_utc")),
                )
            )
        return users
