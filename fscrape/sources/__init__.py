"""Platform clients and client factory."""

from __future__ import annotations

from typing import Any

from ..core.errors import InvalidConfigError
from ..core.types import Platform
from .base import BasePlatformClient, PlatformClient
from .hackernews import HackerNewsClient
from .reddit import RedditClient

_CLIENTS: dict[Platform, type[BasePlatformClient]] = {
    Platform.REDDIT: RedditClient,
    Platform.HACKERNEWS: HackerNewsClient,
}


def create_client(
    platform: Platform,
    query_type: str,
    query_value: str | None = None,
    **kwargs: Any,
) -> BasePlatformClient:
    """Build the client for a platform query.

    Extra keyword arguments (user_agent, timeout, request_limiter,
    include_comments, include_users, ...) go to the client constructor.
    """
    client_cls = _CLIENTS.get(platform)
    if client_cls is None:
        raise InvalidConfigError(f"No client for platform: {platform}")
    return client_cls(query_type, query_value, **kwargs)  # type: ignore[call-arg]


__all__ = [
    "PlatformClient",
    "BasePlatformClient",
    "RedditClient",
    "HackerNewsClient",
    "create_client",
]
