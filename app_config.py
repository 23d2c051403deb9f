"""
Process configuration for RentRoute.

Read once at process start (app.py builds a single AppConfig) and passed
into the Google Maps client, the RentCast client and the commute engine.
Nothing downstream reads os.environ directly, so tests can build an
AppConfig by hand with fake keys.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta, tzinfo
from typing import List, Optional
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from errors import ConfigurationError

load_dotenv()

RETURN_LEG_MODES = ("auto", "per_listing", "batched")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class AppConfig:
    google_maps_api_key: str = ""
    rentcast_api_key: str = ""

    # Per-call timeout in seconds for Google Maps and RentCast.
    request_timeout: int = 10

    # Wall-clock budget for one /api/listings request; commute resolution
    # is cancelled once it runs out. 0 disables the deadline.
    search_deadline_seconds: float = 30.0

    cache_ttl_days: int = 7
    failure_backoff_minutes: int = 15

    return_leg_strategy: str = "auto"
    return_leg_max_workers: int = 4

    # IANA zone used to resolve "HH:MM" labels; empty = host local time.
    commute_timezone: str = ""

    rate_limit_default: str = "60/minute"
    rate_limit_search: str = "30/minute"
    sentry_dsn: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_env(cls) -> "AppConfig":
        strategy = os.environ.get("RETURN_LEG_STRATEGY", "auto").strip().lower()
        if strategy not in RETURN_LEG_MODES:
            raise ValueError(
                f"RETURN_LEG_STRATEGY must be one of {RETURN_LEG_MODES}, got {strategy!r}"
            )
        return cls(
            google_maps_api_key=os.environ.get("GOOGLE_MAPS_API_KEY", ""),
            rentcast_api_key=os.environ.get("RENTCAST_API_KEY", ""),
            request_timeout=_env_int("API_REQUEST_TIMEOUT", 10),
            search_deadline_seconds=_env_float("SEARCH_DEADLINE_SECONDS", 30.0),
            cache_ttl_days=_env_int("COMMUTE_CACHE_TTL_DAYS", 7),
            failure_backoff_minutes=_env_int("COMMUTE_FAILURE_BACKOFF_MINUTES", 15),
            return_leg_strategy=strategy,
            return_leg_max_workers=max(1, _env_int("RETURN_LEG_MAX_WORKERS", 4)),
            commute_timezone=os.environ.get("COMMUTE_TIMEZONE", ""),
            rate_limit_default=os.environ.get("RATE_LIMIT_DEFAULT", "60/minute"),
            rate_limit_search=os.environ.get("RATE_LIMIT_SEARCH", "30/minute"),
            sentry_dsn=os.environ.get("SENTRY_DSN") or None,
        )

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(days=self.cache_ttl_days)

    @property
    def failure_backoff(self) -> timedelta:
        return timedelta(minutes=self.failure_backoff_minutes)

    @property
    def tz(self) -> Optional[tzinfo]:
        if not self.commute_timezone:
            return None
        return ZoneInfo(self.commute_timezone)

    def missing_keys(self) -> List[str]:
        missing = []
        if not self.google_maps_api_key:
            missing.append("GOOGLE_MAPS_API_KEY")
        if not self.rentcast_api_key:
            missing.append("RENTCAST_API_KEY")
        return missing

    def require(self, *names: str) -> None:
        """Raise ConfigurationError if any of the named credentials is unset."""
        missing = [n for n in names if n in self.missing_keys()]
        if missing:
            raise ConfigurationError(missing)
