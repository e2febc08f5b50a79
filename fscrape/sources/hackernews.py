"""
HackerNews Firebase API client.

Story lists (top/new/best/ask/show/job) or a user's submissions are
fetched once per client, then paged through by offset.

Usage:
    from fscrape.sources import HackerNewsClient

    async with HackerNewsClient("top") as client:
        page = await client.fetch_page(None, 25)

Resume token: the decimal offset into the id list. Lists are re-read
by a fresh client, so a resumed session continues from the same offset
of the list as it is at resume time.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from ..config.constants import HACKERNEWS_BASE_URL
from ..core.errors import MalformedRequestError
from ..core.types import Comment, ForumPost, Item, Page, Platform, User
from ..observability.logger import get_logger
from .base import BasePlatformClient

logger = get_logger(__name__)

LIST_ENDPOINTS = {
    "top": "/topstories.json",
    "new": "/newstories.json",
    "best": "/beststories.json",
    "ask": "/askstories.json",
    "show": "/showstories.json",
    "job": "/jobstories.json",
}


def _ts(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class HackerNewsClient(BasePlatformClient):
    """Firebase API client for story lists and user submissions."""

    BASE_URL = HACKERNEWS_BASE_URL
    PLATFORM = Platform.HACKERNEWS

    def __init__(
        self,
        query_type: str,
        query_value: str | None = None,
        *,
        include_comments: bool = False,
        include_users: bool = False,
        comment_limit: int = 20,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if query_type not in LIST_ENDPOINTS and query_type != "user":
            raise MalformedRequestError(
                f"Unknown HackerNews query type: {query_type}", platform="hackernews"
            )
        self.query_type = query_type
        self.query_value = query_value
        self.include_comments = include_comments
        self.include_users = include_users
        self.comment_limit = comment_limit
        self._ids: list[int] | None = None

    async def _item_ids(self) -> list[int]:
        if self._ids is None:
            if self.query_type == "user":
                user = await self._get_json(f"/user/{self.query_value}.json")
                if user is None:
                    raise MalformedRequestError(
                        f"HackerNews user not found: {self.query_value}", platform="hackernews"
                    )
                ids = self._require(user, dict, "user").get("submitted", [])
            else:
                ids = await self._get_json(LIST_ENDPOINTS[self.query_type])
            self._ids = [int(i) for i in self._require(ids or [], list, "id list")]
            logger.debug(f"Loaded {len(self._ids)} ids for {self.query_type}")
        return self._ids

    @staticmethod
    def _parse_offset(resume_token: str | None) -> int:
        if resume_token is None:
            return 0
        try:
            offset = int(resume_token)
        except ValueError:
            raise MalformedRequestError(
                f"Invalid HackerNews resume token: {resume_token!r}", platform="hackernews"
            ) from None
        if offset < 0:
            raise MalformedRequestError(
                f"Invalid HackerNews resume token: {resume_token!r}", platform="hackernews"
            )
        return offset

    async def _get_item(self, item_id: int) -> dict[str, Any] | None:
        data = await self._get_json(f"/item/{item_id}.json", follow_up=True)
        if not isinstance(data, dict) or data.get("deleted") or data.get("dead"):
            return None
        return data

    async def fetch_page(self, resume_token: str | None, page_size: int) -> Page:
        offset = self._parse_offset(resume_token)
        ids = await self._item_ids()
        batch = ids[offset : offset + max(1, page_size)]

        raw_items = await asyncio.gather(*(self._get_item(i) for i in batch))

        items: list[Item] = []
        for data in raw_items:
            if data is None:
                continue
            if data.get("type") == "comment":
                items.append(self._parse_comment(data, post_id=str(data.get("parent"))))
            else:
                post = self._parse_post(data)
                items.append(post)
                if self.include_comments:
                    items.extend(await self._fetch_comments(post, data.get("kids") or []))

        if self.include_users:
            items.extend(await self._fetch_users(items))

        next_offset = offset + len(batch)
        has_more = next_offset < len(ids)
        return Page(
            items=items,
            next_resume_token=str(next_offset) if has_more else None,
            has_more=has_more,
        )

    def _parse_post(self, data: dict[str, Any]) -> ForumPost:
        item_id = str(data["id"])
        return ForumPost(
            id=item_id,
            platform=Platform.HACKERNEWS,
            title=data.get("title") or "",
            author=data.get("by"),
            url=data.get("url"),
            content=data.get("text"),
            score=int(data.get("score") or 0),
            comment_count=int(data.get("descendants") or 0),
            created_at=_ts(data.get("time")),
            permalink=f"https://news.ycombinator.com/item?id={item_id}",
            metadata={"type": data.get("type", "story")},
        )

    def _parse_comment(self, data: dict[str, Any], post_id: str, depth: int = 0) -> Comment:
        return Comment(
            id=str(data["id"]),
            post_id=post_id,
            platform=Platform.HACKERNEWS,
            content=data.get("text") or "",
            author=data.get("by"),
            parent_id=str(data["parent"]) if data.get("parent") is not None else None,
            depth=depth,
            created_at=_ts(data.get("time")),
        )

    async def _fetch_comments(self, post: ForumPost, kids: list[int]) -> list[Comment]:
        """Top-level comments of a story."""
        raw = await asyncio.gather(*(self._get_item(k) for k in kids[: self.comment_limit]))
        return [self._parse_comment(d, post_id=post.id) for d in raw if d is not None]

    async def _fetch_users(self, items: list[Item]) -> list[User]:
        names: list[str] = []
        for item in items:
            author = getattr(item, "author", None)
            if author and author not in names:
                names.append(author)

        users = []
        for name in names:
            data = await self._get_json(f"/user/{name}.json", follow_up=True)
            if not isinstance(data, dict):
                continue
            users.append(
                User(
                    id=str(data.get("id") or name),
                    username=str(data.get("id") or name),
                    platform=Platform.HACKERNEWS,
                    karma=data.get("karma"),
                    created_at=_ts(data.get("created")),
                    about=data.get("about"),
                )
            )
        return users
