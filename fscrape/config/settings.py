"""Application settings using Pydantic. No side effects at import time."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.types import Platform
from .constants import (
    DEFAULT_DATABASE_PATH,
    DEFAULT_JITTER,
    DEFAULT_MAX_RETRIES,
    DEFAULT_PAGE_SIZE,
    DEFAULT_PERSIST_EVERY_BATCHES,
    DEFAULT_PERSIST_INTERVAL,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SESSIONS_DIR,
    DEFAULT_USER_AGENT,
    HACKERNEWS_BACKOFF_MULTIPLIER,
    HACKERNEWS_INITIAL_DELAY,
    HACKERNEWS_MAX_DELAY,
    HACKERNEWS_MAX_REQUESTS_PER_HOUR,
    HACKERNEWS_MAX_REQUESTS_PER_MINUTE,
    MAX_PAGE_SIZE,
    REDDIT_BACKOFF_MULTIPLIER,
    REDDIT_INITIAL_DELAY,
    REDDIT_MAX_DELAY,
    REDDIT_MAX_REQUESTS_PER_HOUR,
    REDDIT_MAX_REQUESTS_PER_MINUTE,
)

BackoffStrategyName = Literal["exponential", "linear", "fibonacci", "decorrelated", "none"]


class PlatformLimits(BaseModel):
    """Rate limit and retry options for one platform.

    Closed and validated: unknown fields are rejected at construction.
    All durations are in seconds.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    # === Sliding windows (None = window not enforced) ===
    max_requests_per_second: Annotated[int, Field(gt=0)] | None = None
    max_requests_per_minute: Annotated[int, Field(gt=0)] | None = None
    max_requests_per_hour: Annotated[int, Field(gt=0)] | None = None

    # === Retry ===
    max_retries: Annotated[int, Field(ge=0)] = DEFAULT_MAX_RETRIES
    backoff_strategy: BackoffStrategyName = "exponential"
    backoff_multiplier: Annotated[float, Field(ge=1.0)] = 2.0
    initial_delay: Annotated[float, Field(ge=0)] = 1.0
    max_delay: Annotated[float, Field(ge=0)] = 60.0
    jitter: Annotated[float, Field(ge=0, le=1)] = DEFAULT_JITTER
    respect_rate_limit_headers: bool = True

    @model_validator(mode="after")
    def _check_delays(self) -> PlatformLimits:
        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= initial_delay ({self.initial_delay})"
            )
        return self


def default_reddit_limits() -> PlatformLimits:
    return PlatformLimits(
        max_requests_per_minute=REDDIT_MAX_REQUESTS_PER_MINUTE,
        max_requests_per_hour=REDDIT_MAX_REQUESTS_PER_HOUR,
        backoff_multiplier=REDDIT_BACKOFF_MULTIPLIER,
        initial_delay=REDDIT_INITIAL_DELAY,
        max_delay=REDDIT_MAX_DELAY,
    )


def default_hackernews_limits() -> PlatformLimits:
    return PlatformLimits(
        max_requests_per_minute=HACKERNEWS_MAX_REQUESTS_PER_MINUTE,
        max_requests_per_hour=HACKERNEWS_MAX_REQUESTS_PER_HOUR,
        backoff_multiplier=HACKERNEWS_BACKOFF_MULTIPLIER,
        initial_delay=HACKERNEWS_INITIAL_DELAY,
        max_delay=HACKERNEWS_MAX_DELAY,
    )


_PLATFORM_DEFAULTS = {
    "reddit": default_reddit_limits,
    "hackernews": default_hackernews_limits,
}


class Settings(BaseSettings):
    """Application settings with validation.

    Settings are loaded from FSCRAPE_* environment variables and .env file.
    Nested platform limits use a double underscore, e.g.
    FSCRAPE_REDDIT__MAX_RETRIES=5.
    """

    model_config = SettingsConfigDict(
        env_prefix="FSCRAPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",  # Ignore extra env vars
    )

    # === Storage ===
    database_path: Path = DEFAULT_DATABASE_PATH
    sessions_backend: Literal["sqlite", "json"] = "sqlite"
    sessions_dir: Path = DEFAULT_SESSIONS_DIR

    # === Fetching ===
    page_size: Annotated[int, Field(gt=0, le=MAX_PAGE_SIZE)] = DEFAULT_PAGE_SIZE
    request_timeout: Annotated[float, Field(gt=0)] = DEFAULT_REQUEST_TIMEOUT
    user_agent: str = DEFAULT_USER_AGENT

    # === Checkpointing ===
    persist_every_batches: Annotated[int, Field(gt=0)] = DEFAULT_PERSIST_EVERY_BATCHES
    persist_interval: Annotated[float, Field(gt=0)] = DEFAULT_PERSIST_INTERVAL

    # === Logging ===
    log_level: str = "INFO"
    json_logs: bool = False

    # === Platforms ===
    reddit: PlatformLimits = Field(default_factory=default_reddit_limits)
    hackernews: PlatformLimits = Field(default_factory=default_hackernews_limits)

    @field_validator("reddit", "hackernews", mode="before")
    @classmethod
    def _merge_platform_defaults(cls, value: Any, info: ValidationInfo) -> Any:
        # Partial overrides (FSCRAPE_REDDIT__MAX_RETRIES=5) keep the other platform defaults
        if isinstance(value, dict):
            defaults = _PLATFORM_DEFAULTS[info.field_name]().model_dump()
            return {**defaults, **value}
        return value

    def limits_for(self, platform: Platform) -> PlatformLimits:
        """Limits configured for a platform."""
        return self.reddit if platform == Platform.REDDIT else self.hackernews

    @property
    def platform_limits(self) -> dict[Platform, PlatformLimits]:
        return {Platform.REDDIT: self.reddit, Platform.HACKERNEWS: self.hackernews}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Only entry points should call this; library components receive
    explicit configuration objects.
    """
    return Settings()
