"""Error hierarchy for fscrape.

All scraper errors inherit from ScrapeError.
Use `is_retryable` property to determine if an error can be retried.
"""

from __future__ import annotations

from typing import Any


class ScrapeError(Exception):
    """Base error for all scraper errors.

    Attributes:
        message: Error description
        platform: Related platform name (if applicable)
        session_id: Related session id (if applicable)
    """

    def __init__(
        self,
        message: str,
        *,
        platform: str | None = None,
        session_id: str | None = None,
    ) -> None:
        self.platform = platform
        self.session_id = session_id
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error can be retried."""
        return False

    def to_dict(self) -> dict[str, Any]:
        """Serialize for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": str(self),
            "platform": self.platform,
            "session_id": self.session_id,
            "is_retryable": self.is_retryable,
        }


# === Transport errors ===


class NetworkError(ScrapeError):
    """Network connectivity error (reset, refused, DNS).

    This is retryable - might be a temporary network issue.
    """

    def __init__(self, message: str = "Network error", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)

    @property
    def is_retryable(self) -> bool:
        return True


class RequestTimeoutError(ScrapeError):
    """Request timed out.

    This is retryable - the server might be temporarily slow.
    """

    def __init__(
        self,
        message: str = "Request timed out",
        *,
        timeout_seconds: float | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.timeout_seconds = timeout_seconds

    @property
    def is_retryable(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["timeout_seconds"] = self.timeout_seconds
        return d


class HTTPStatusError(ScrapeError):
    """Platform answered with a non-success HTTP status.

    429 and 5xx are retryable, every other 4xx is fatal.
    """

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int,
        retry_after: float | None = None,
        url: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message or f"HTTP {status_code}", **kwargs)
        self.status_code = status_code
        self.retry_after = retry_after
        self.url = url

    @property
    def is_retryable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["status_code"] = self.status_code
        d["retry_after"] = self.retry_after
        d["url"] = self.url
        return d


class RateLimitError(HTTPStatusError):
    """Rate limit exceeded (HTTP 429).

    This is retryable after waiting for `retry_after` seconds.
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: float | None = None,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("status_code", 429)
        super().__init__(message, retry_after=retry_after, **kwargs)


class MalformedRequestError(ScrapeError):
    """Request could not be built or was rejected as malformed.

    This is NOT retryable - sending it again gives the same answer.
    """

    def __init__(self, message: str = "Malformed request", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class ValidationError(ScrapeError):
    """Platform payload violated the expected schema.

    This is NOT retryable - the data format is invalid.
    """

    def __init__(
        self,
        message: str = "Validation error",
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["field"] = self.field
        d["value"] = str(self.value) if self.value is not None else None
        return d


class StorageError(ScrapeError):
    """Persistence sink or session store failed to commit."""


# === Configuration and state errors ===


class InvalidConfigError(ScrapeError):
    """Session or limiter configuration is invalid. Never stored as a session."""


class InvalidStateError(ScrapeError):
    """Requested lifecycle transition is not allowed from the current status."""

    def __init__(
        self,
        message: str,
        *,
        current_status: str | None = None,
        target_status: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.current_status = current_status
        self.target_status = target_status

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["current_status"] = self.current_status
        d["target_status"] = self.target_status
        return d


class AlreadyRunningError(InvalidStateError):
    """Session already has a live fetch loop in this process."""


class SessionNotFoundError(ScrapeError):
    """No session with the given id exists in the store."""


class RetryExhaustedError(ScrapeError):
    """All retry attempts failed with retryable errors.

    The last underlying error is kept on `last_error` and chained
    as `__cause__`.
    """

    def __init__(
        self,
        message: str | None = None,
        *,
        attempts: int,
        last_error: BaseException | None = None,
        failure_type: str | None = None,
        **kwargs: Any,
    ) -> None:
        if message is None:
            retries = max(attempts - 1, 0)
            reason = failure_type or (type(last_error).__name__ if last_error else "unknown")
            message = f"Gave up after {retries} retries ({attempts} attempts): {reason}"
            if last_error is not None:
                message += f": {last_error}"
        super().__init__(message, **kwargs)
        self.attempts = attempts
        self.last_error = last_error
        self.failure_type = failure_type

    @property
    def retries(self) -> int:
        """Number of retries made after the first attempt."""
        return max(self.attempts - 1, 0)

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["attempts"] = self.attempts
        d["failure_type"] = self.failure_type
        d["last_error"] = repr(self.last_error) if self.last_error else None
        return d
