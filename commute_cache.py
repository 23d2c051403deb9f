"""
Commute result cache.

Keys are (listing id, rounded destination lat, rounded destination lng,
departure label, return label). Labels are the literal "HH:MM" strings, not
resolved instants, so one entry serves searches on any day.

Entries are upserted and never deleted. An entry older than the TTL reads
as a miss but stays in place until a successful recomputation overwrites it.
"""

import math
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, NamedTuple, Optional

import models
from geo import Coordinate

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(days=7)
DEFAULT_FAILURE_BACKOFF = timedelta(minutes=15)
MAX_FAILURE_BACKOFF = timedelta(hours=24)


class CommuteKey(NamedTuple):
    listing_id: str
    dest_lat: str
    dest_lng: str
    departure_label: str
    return_label: str

    @classmethod
    def build(cls, listing_id: str, destination: Coordinate,
              departure_label: str, return_label: str) -> "CommuteKey":
        dest_lat, dest_lng = destination.key_parts()
        return cls(listing_id, dest_lat, dest_lng, departure_label, return_label)


class CommuteResult(NamedTuple):
    commute_to_min: int
    commute_from_min: int
    avg_commute_min: int

    @classmethod
    def from_legs(cls, to_min: int, from_min: int) -> "CommuteResult":
        """The only way to build a result: the average is always derived."""
        if to_min < 0 or from_min < 0:
            raise ValueError("commute minutes must be non-negative")
        avg = int(math.floor((to_min + from_min) / 2 + 0.5))
        return cls(int(to_min), int(from_min), avg)

    def to_dict(self) -> dict:
        return {
            "commuteToMin": self.commute_to_min,
            "commuteFromMin": self.commute_from_min,
            "avgCommuteMin": self.avg_commute_min,
        }


class CacheEntry(NamedTuple):
    result: CommuteResult
    created_at: datetime


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CommuteCache:
    """SQLite-backed commute cache with age-based freshness and failure backoff."""

    def __init__(
        self,
        ttl: timedelta = DEFAULT_TTL,
        failure_backoff: timedelta = DEFAULT_FAILURE_BACKOFF,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ttl = ttl
        self.failure_backoff = failure_backoff
        self._clock = clock or _utcnow

    def _now(self, now: Optional[datetime]) -> datetime:
        return now if now is not None else self._clock()

    def get(self, key: CommuteKey, now: Optional[datetime] = None) -> Optional[CacheEntry]:
        """Fresh entry for ``key``, or None if absent, stale or unreadable."""
        row = models.get_commute_cache(key)
        if row is None:
            return None
        try:
            created_at = _parse_ts(row["created_at"])
        except (TypeError, ValueError):
            logger.warning("Unparseable created_at for commute key %s; treating as miss", key)
            return None
        if self._now(now) - created_at >= self.ttl:
            return None
        result = CommuteResult(
            row["commute_to_min"], row["commute_from_min"], row["avg_commute_min"]
        )
        return CacheEntry(result, created_at)

    def put(self, key: CommuteKey, result: CommuteResult,
            now: Optional[datetime] = None) -> bool:
        """Upsert ``result`` under ``key``. Also clears any failure record."""
        return models.set_commute_cache(
            key,
            result.commute_to_min,
            result.commute_from_min,
            result.avg_commute_min,
            created_at=self._now(now).isoformat(),
        )

    def record_failure(self, key: CommuteKey, now: Optional[datetime] = None) -> None:
        if not self.failure_backoff:
            return
        models.record_commute_failure(key, failed_at=self._now(now).isoformat())

    def in_backoff(self, key: CommuteKey, now: Optional[datetime] = None) -> bool:
        """True while a recently failed key should not be retried.

        The window doubles with each consecutive failure, capped at 24 hours.
        """
        if not self.failure_backoff:
            return False
        row = models.get_commute_failure(key)
        if row is None:
            return False
        try:
            failed_at = _parse_ts(row["failed_at"])
        except (TypeError, ValueError):
            return False
        count = min(max(1, int(row["failure_count"])), 16)
        window = min(self.failure_backoff * (2 ** (count - 1)), MAX_FAILURE_BACKOFF)
        return self._now(now) - failed_at < window
