"""Base protocol and shared HTTP plumbing for platform clients."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import aiohttp

from ..config.constants import DEFAULT_REQUEST_TIMEOUT, DEFAULT_USER_AGENT
from ..core.errors import HTTPStatusError, RateLimitError, ValidationError
from ..core.types import Page, Platform
from ..observability.logger import get_logger
from ..rate_limit.classify import parse_retry_after
from ..rate_limit.limiter import CompositeRateLimiter

logger = get_logger(__name__)


@runtime_checkable
class PlatformClient(Protocol):
    """Protocol for platform clients (Reddit, HackerNews).

    The resume token is opaque to callers: pass back exactly what the
    previous page returned, or None for the first page.
    """

    @property
    def platform(self) -> Platform: ...

    async def fetch_page(self, resume_token: str | None, page_size: int) -> Page:
        """Fetch the page that starts at `resume_token`.

        Raises:
            HTTPStatusError / RateLimitError: non-success HTTP status
            ValidationError: payload did not match the platform schema
            aiohttp.ClientError / TimeoutError: transport failures
        """
        ...

    async def close(self) -> None: ...


class BasePlatformClient:
    """aiohttp session handling and status mapping shared by clients.

    `request_limiter` paces the follow-up requests a client makes inside
    one fetch_page call (comments, users, HN items). The first request of
    each page is paced by the session manager.
    """

    BASE_URL = ""
    PLATFORM: Platform

    def __init__(
        self,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        request_limiter: CompositeRateLimiter | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.user_agent = user_agent
        self.timeout = timeout
        self.request_limiter = request_limiter
        self._session = session
        self._owns_session = session is None

    @property
    def platform(self) -> Platform:
        return self.PLATFORM

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"User-Agent": self.user_agent, "Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the session."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> BasePlatformClient:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _get_json(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        follow_up: bool = False,
    ) -> Any:
        """GET a JSON document, mapping HTTP failures to scraper errors.

        Transport errors (aiohttp.ClientError, timeouts) propagate as-is;
        the retry policy classifies them.
        """
        if follow_up and self.request_limiter is not None:
            await self.request_limiter.acquire()

        session = await self._get_session()
        url = f"{self.BASE_URL}{path}"

        async with session.get(url, params=params) as resp:
            if resp.status == 429:
                raise RateLimitError(
                    f"Rate limited by {self.platform.value}",
                    retry_after=parse_retry_after(resp.headers.get("Retry-After")),
                    platform=self.platform.value,
                    url=url,
                )
            if resp.status >= 400:
                text = await resp.text()
                raise HTTPStatusError(
                    f"HTTP {resp.status} from {url}: {text[:200]}",
                    status_code=resp.status,
                    retry_after=parse_retry_after(resp.headers.get("Retry-After")),
                    platform=self.platform.value,
                    url=url,
                )
            try:
                return await resp.json(content_type=None)
            except ValueError as e:
                raise ValidationError(
                    f"Invalid JSON from {url}",
                    platform=self.platform.value,
                ) from e

    def _require(self, data: Any, kind: type, what: str) -> Any:
        if not isinstance(data, kind):
            raise ValidationError(
                f"Unexpected {what} payload: {type(data).__name__}",
                field=what,
                value=data,
                platform=self.platform.value,
            )
        return data
