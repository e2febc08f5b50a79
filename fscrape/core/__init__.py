"""Core infrastructure for fscrape."""

from .errors import (
    AlreadyRunningError,
    HTTPStatusError,
    InvalidConfigError,
    InvalidStateError,
    MalformedRequestError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    RetryExhaustedError,
    ScrapeError,
    SessionNotFoundError,
    StorageError,
    ValidationError,
)
from .types import Comment, ForumPost, Item, Page, Platform, SessionStatus, User

__all__ = [
    # Errors
    "ScrapeError",
    "NetworkError",
    "RequestTimeoutError",
    "HTTPStatusError",
    "RateLimitError",
    "MalformedRequestError",
    "ValidationError",
    "StorageError",
    "InvalidConfigError",
    "InvalidStateError",
    "AlreadyRunningError",
    "SessionNotFoundError",
    "RetryExhaustedError",
    # Types
    "Platform",
    "SessionStatus",
    "ForumPost",
    "Comment",
    "User",
    "Item",
    "Page",
]
