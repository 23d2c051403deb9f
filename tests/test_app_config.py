"""Tests for app_config.py: environment parsing and credential checks."""

from datetime import timedelta

import pytest

from app_config import AppConfig
from errors import ConfigurationError

_ENV_KEYS = (
    "GOOGLE_MAPS_API_KEY", "RENTCAST_API_KEY", "API_REQUEST_TIMEOUT",
    "COMMUTE_CACHE_TTL_DAYS", "COMMUTE_FAILURE_BACKOFF_MINUTES",
    "RETURN_LEG_STRATEGY", "RETURN_LEG_MAX_WORKERS", "COMMUTE_TIMEZONE",
    "RATE_LIMIT_DEFAULT", "RATE_LIMIT_SEARCH", "SENTRY_DSN", "SEARCH_DEADLINE_SECONDS",
)


@pytest.fixture()
def clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


class TestFromEnv:
    def test_defaults(self, clean_env):
        config = AppConfig.from_env()
        assert config.request_timeout == 10
        assert config.cache_ttl == timedelta(days=7)
        assert config.search_deadline_seconds == 30.0
        assert config.failure_backoff == timedelta(minutes=15)
        assert config.return_leg_strategy == "auto"
        assert config.return_leg_max_workers == 4
        assert config.tz is None
        assert config.sentry_dsn is None

    def test_overrides(self, clean_env):
        clean_env.setenv("GOOGLE_MAPS_API_KEY", "g")
        clean_env.setenv("API_REQUEST_TIMEOUT", "5")
        clean_env.setenv("SEARCH_DEADLINE_SECONDS", "2.5")
        clean_env.setenv("COMMUTE_CACHE_TTL_DAYS", "3")
        clean_env.setenv("COMMUTE_FAILURE_BACKOFF_MINUTES", "0")
        clean_env.setenv("RETURN_LEG_STRATEGY", "Per_Listing")
        clean_env.setenv("RETURN_LEG_MAX_WORKERS", "0")
        clean_env.setenv("COMMUTE_TIMEZONE", "America/New_York")
        config = AppConfig.from_env()
        assert config.google_maps_api_key == "g"
        assert config.request_timeout == 5
        assert config.search_deadline_seconds == 2.5
        assert config.cache_ttl == timedelta(days=3)
        assert not config.failure_backoff
        assert config.return_leg_strategy == "per_listing"
        assert config.return_leg_max_workers == 1
        assert str(config.tz) == "America/New_York"

    def test_blank_int_uses_default(self, clean_env):
        clean_env.setenv("API_REQUEST_TIMEOUT", "  ")
        assert AppConfig.from_env().request_timeout == 10

    def test_unknown_strategy(self, clean_env):
        clean_env.setenv("RETURN_LEG_STRATEGY", "parallel")
        with pytest.raises(ValueError):
            AppConfig.from_env()


class TestCredentials:
    def test_missing_keys(self):
        assert AppConfig().missing_keys() == ["GOOGLE_MAPS_API_KEY", "RENTCAST_API_KEY"]
        assert AppConfig(google_maps_api_key="g", rentcast_api_key="r").missing_keys() == []

    def test_require(self):
        config = AppConfig(rentcast_api_key="r")
        config.require("RENTCAST_API_KEY")
        with pytest.raises(ConfigurationError) as exc:
            config.require("GOOGLE_MAPS_API_KEY", "RENTCAST_API_KEY")
        assert exc.value.missing_keys == ["GOOGLE_MAPS_API_KEY"]

    def test_dsn_hidden_from_repr(self):
        assert "secret" not in repr(AppConfig(sentry_dsn="https://secret@sentry.example/1"))
