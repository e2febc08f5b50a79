"""Tests for fscrape/config/settings.py."""

import os

import pydantic
import pytest

from fscrape.config import PlatformLimits, Settings, get_settings
from fscrape.config.constants import DEFAULT_PAGE_SIZE, REDDIT_MAX_REQUESTS_PER_MINUTE
from fscrape.core.types import Platform


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate settings from the developer's environment and .env file."""
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("FSCRAPE_"):
            monkeypatch.delenv(key)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# =============================================================================
# PlatformLimits
# =============================================================================


class TestPlatformLimits:
    """Tests for per-platform limit validation."""

    def test_defaults(self):
        """A bare PlatformLimits has no windows and exponential backoff."""
        limits = PlatformLimits()

        assert limits.max_requests_per_minute is None
        assert limits.backoff_strategy == "exponential"
        assert limits.respect_rate_limit_headers is True

    def test_unknown_field_rejected(self):
        """Unknown options are a construction error."""
        with pytest.raises(pydantic.ValidationError):
            PlatformLimits(max_requests_per_day=100)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_requests_per_minute": 0},
            {"max_retries": -1},
            {"backoff_multiplier": 0.5},
            {"jitter": 1.5},
            {"backoff_strategy": "random"},
            {"initial_delay": 10.0, "max_delay": 5.0},
        ],
    )
    def test_invalid_values(self, kwargs):
        """Out-of-range values are rejected."""
        with pytest.raises(pydantic.ValidationError):
            PlatformLimits(**kwargs)

    def test_frozen(self):
        """Limits are immutable once built."""
        limits = PlatformLimits()

        with pytest.raises(pydantic.ValidationError):
            limits.max_retries = 9


# =============================================================================
# Settings
# =============================================================================


class TestSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self):
        """Platform defaults are filled in without any env vars."""
        settings = Settings()

        assert settings.page_size == DEFAULT_PAGE_SIZE
        assert settings.reddit.max_requests_per_minute == REDDIT_MAX_REQUESTS_PER_MINUTE
        assert settings.sessions_backend == "sqlite"

    def test_env_prefix(self, monkeypatch, tmp_path):
        """FSCRAPE_* variables override defaults."""
        monkeypatch.setenv("FSCRAPE_PAGE_SIZE", "50")
        monkeypatch.setenv("FSCRAPE_DATABASE_PATH", str(tmp_path / "x.db"))

        settings = Settings()

        assert settings.page_size == 50
        assert settings.database_path == tmp_path / "x.db"

    def test_nested_partial_override(self, monkeypatch):
        """One nested field overrides without losing the other defaults."""
        monkeypatch.setenv("FSCRAPE_REDDIT__MAX_RETRIES", "7")

        settings = Settings()

        assert settings.reddit.max_retries == 7
        assert settings.reddit.max_requests_per_minute == REDDIT_MAX_REQUESTS_PER_MINUTE

    def test_invalid_env_value(self, monkeypatch):
        """Bad values fail validation."""
        monkeypatch.setenv("FSCRAPE_PAGE_SIZE", "0")

        with pytest.raises(pydantic.ValidationError):
            Settings()

    def test_limits_for(self):
        """limits_for picks the platform's limits."""
        settings = Settings()

        assert settings.limits_for(Platform.REDDIT) is settings.reddit
        assert settings.limits_for(Platform.HACKERNEWS) is settings.hackernews
        assert set(settings.platform_limits) == {Platform.REDDIT, Platform.HACKERNEWS}

    def test_get_settings_cached(self):
        """get_settings returns one shared instance until cleared."""
        assert get_settings() is get_settings()
