"""Configuration module for fscrape."""

from .settings import (
    PlatformLimits,
    Settings,
    default_hackernews_limits,
    default_reddit_limits,
    get_settings,
)
from .constants import (
    # Pagination
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    # Timeouts
    DEFAULT_REQUEST_TIMEOUT,
    # Progress
    DEFAULT_MILESTONES,
)

__all__ = [
    "Settings",
    "PlatformLimits",
    "get_settings",
    "default_reddit_limits",
    "default_hackernews_limits",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    "DEFAULT_REQUEST_TIMEOUT",
    "DEFAULT_MILESTONES",
]
