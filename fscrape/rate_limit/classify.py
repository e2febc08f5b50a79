"""Error classification for retry decisions.

This is the central place for deciding whether a failed request is
worth another attempt. Unknown errors are retryable so that a flaky
platform does not end a long session on the first odd exception.
"""

from __future__ import annotations

import asyncio
import socket
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Mapping

import aiohttp

from ..core.errors import (
    HTTPStatusError,
    InvalidConfigError,
    InvalidStateError,
    MalformedRequestError,
    NetworkError,
    RequestTimeoutError,
    RetryExhaustedError,
    SessionNotFoundError,
    StorageError,
    ValidationError,
)


class FailureType(str, Enum):
    """Classification of failure types for retry decisions."""

    TIMEOUT = "timeout"  # Request or connect timed out
    CONNECTION_RESET = "connection_reset"  # Peer dropped the connection
    CONNECTION_REFUSED = "connection_refused"
    DNS = "dns"  # Name resolution failed
    NETWORK = "network"  # Any other transport failure
    RATE_LIMIT = "rate_limit"  # HTTP 429
    SERVER_ERROR = "server_error"  # HTTP 5xx
    CLIENT_ERROR = "client_error"  # HTTP 4xx other than 429 - don't retry
    MALFORMED_REQUEST = "malformed_request"  # Don't retry
    VALIDATION = "validation"  # Platform payload broke its schema - don't retry
    STORAGE = "storage"  # Sink or store failure - don't retry
    CONFIG = "config"  # Don't retry
    STATE = "state"  # Don't retry
    UNKNOWN = "unknown"  # Retry up to the cap


_FATAL = frozenset(
    {
        FailureType.CLIENT_ERROR,
        FailureType.MALFORMED_REQUEST,
        FailureType.VALIDATION,
        FailureType.STORAGE,
        FailureType.CONFIG,
        FailureType.STATE,
    }
)

# Message fragments for errors that arrive without a useful type
_INDICATORS: list[tuple[FailureType, tuple[str, ...]]] = [
    (FailureType.RATE_LIMIT, ("429", "rate limit", "too many requests", "throttl")),
    (FailureType.CONNECTION_RESET, ("econnreset", "connection reset", "epipe", "broken pipe")),
    (FailureType.CONNECTION_REFUSED, ("econnrefused", "connection refused")),
    (
        FailureType.DNS,
        ("enotfound", "eai_again", "getaddrinfo", "name or service not known", "nodename nor servname"),
    ),
    (FailureType.TIMEOUT, ("etimedout", "timed out", "timeout")),
    (FailureType.NETWORK, ("ehostunreach", "network is unreachable", "network")),
]


def _from_status(status: int) -> FailureType:
    if status == 429:
        return FailureType.RATE_LIMIT
    if status >= 500:
        return FailureType.SERVER_ERROR
    if 400 <= status < 500:
        return FailureType.CLIENT_ERROR
    return FailureType.UNKNOWN


def _from_os_error(error: BaseException) -> FailureType:
    if isinstance(error, socket.gaierror):
        return FailureType.DNS
    if isinstance(error, ConnectionRefusedError):
        return FailureType.CONNECTION_REFUSED
    if isinstance(error, (ConnectionResetError, BrokenPipeError, ConnectionAbortedError)):
        return FailureType.CONNECTION_RESET
    if isinstance(error, TimeoutError):
        return FailureType.TIMEOUT
    return FailureType.NETWORK


def classify_failure(error: BaseException) -> FailureType:
    """Classify an exception into a FailureType.

    All retry decisions go through this function so that the retry
    policy, the session manager and the CLI agree on what is fatal.
    """
    if isinstance(error, RetryExhaustedError) and error.last_error is not None:
        return classify_failure(error.last_error)

    # Our own hierarchy
    if isinstance(error, HTTPStatusError):
        return _from_status(error.status_code)
    if isinstance(error, RequestTimeoutError):
        return FailureType.TIMEOUT
    if isinstance(error, NetworkError):
        cause = error.__cause__
        if isinstance(cause, OSError):
            return _from_os_error(cause)
        return _classify_message(error) or FailureType.NETWORK
    if isinstance(error, MalformedRequestError):
        return FailureType.MALFORMED_REQUEST
    if isinstance(error, ValidationError):
        return FailureType.VALIDATION
    if isinstance(error, StorageError):
        return FailureType.STORAGE
    if isinstance(error, InvalidConfigError):
        return FailureType.CONFIG
    if isinstance(error, (InvalidStateError, SessionNotFoundError)):
        return FailureType.STATE

    # aiohttp
    if isinstance(error, aiohttp.ContentTypeError):
        return FailureType.VALIDATION
    if isinstance(error, aiohttp.ClientResponseError):
        return _from_status(error.status)
    if isinstance(error, aiohttp.InvalidURL):
        return FailureType.MALFORMED_REQUEST
    if isinstance(error, (aiohttp.ServerTimeoutError, asyncio.TimeoutError)):
        return FailureType.TIMEOUT
    if isinstance(error, aiohttp.ClientConnectorError):
        return _from_os_error(error.os_error)
    if isinstance(error, aiohttp.ServerDisconnectedError):
        return FailureType.CONNECTION_RESET
    if isinstance(error, (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError)):
        return FailureType.NETWORK

    # Builtins
    if isinstance(error, TimeoutError):
        return FailureType.TIMEOUT
    if isinstance(error, OSError):
        return _from_os_error(error)

    return _classify_message(error) or FailureType.UNKNOWN


def _classify_message(error: BaseException) -> FailureType | None:
    error_str = str(error).lower()
    for failure_type, indicators in _INDICATORS:
        if any(indicator in error_str for indicator in indicators):
            return failure_type
    return None


def is_retryable(failure_type: FailureType) -> bool:
    """Check if a failure type should be retried."""
    return failure_type not in _FATAL


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header value.

    Accepts delta-seconds ("120") or an HTTP-date. Returns None when the
    value is missing or unparseable.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        return max(0.0, seconds)

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def retry_after_from(error: BaseException) -> float | None:
    """Server-requested delay carried by an error, if any."""
    if isinstance(error, HTTPStatusError):
        return error.retry_after
    if isinstance(error, aiohttp.ClientResponseError):
        headers: Mapping[str, Any] | None = error.headers
        if headers:
            return parse_retry_after(headers.get("Retry-After"))
    return None
