"""
Commute resolution: cache-first, batched, bidirectional drive times.

For one destination and a set of listings:

  1. Probe the cache for every listing (key uses the destination rounded to
     4 decimals). Fresh hits are returned as-is.
  2. Forward legs (listing -> destination, morning departure) for every miss
     go out as Distance Matrix batches, 25 origins per request.
  3. Return legs (destination -> listing, evening departure) reverse the
     direction. The origin-batch primitive fixes the destination, so the
     default strategy pays one request per listing on a bounded thread pool.
     This is the hot path: N misses cost N return-leg requests. Providers
     that can fan out from one origin to many destinations get the batched
     strategy instead.
  4. Listings with both legs are cached and returned. A listing with either
     leg unavailable is left out of the result entirely; callers treat
     "absent" as "commute unknown".

Provider failures never abort a resolution and are not retried within the
call. Repeated failures put the key into a short, growing backoff window so
an outage does not cost two requests per listing on every search.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple

from commute_cache import CommuteCache, CommuteKey, CommuteResult
from departure_time import parse_time_label, resolve_departure_time
from errors import ProviderUnavailable, ResolutionCancelled
from geo import Coordinate, validate_coordinate
from google_maps import CommuteLeg
from rr_trace import get_trace, set_trace

logger = logging.getLogger(__name__)

DEFAULT_DEPARTURE = "08:00"
DEFAULT_RETURN = "17:00"

Waypoint = Tuple[str, Coordinate]


class CommuteOrigin(NamedTuple):
    """Anything with an id and a coordinate can be resolved; Listing qualifies."""
    id: str
    coordinate: Coordinate


@dataclass(frozen=True)
class PairCommute:
    result: CommuteResult
    distance_to_miles: float
    distance_from_miles: float


def _check_cancelled(cancel_event: Optional[threading.Event]):
    if cancel_event is not None and cancel_event.is_set():
        raise ResolutionCancelled("commute resolution cancelled")


# =============================================================================
# Return-leg strategies
# =============================================================================

class PerListingReturnLegs:
    """One destination -> listing query per listing, at most max_workers in flight."""

    name = "per_listing"

    def __init__(self, max_workers: int = 4):
        self.max_workers = max(1, max_workers)

    def fetch(
        self,
        provider,
        destination: Coordinate,
        targets: List[Waypoint],
        departure: datetime,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Optional[CommuteLeg]]:
        if not targets:
            return {}
        parent_trace = get_trace()

        def _one(coord: Coordinate) -> Optional[CommuteLeg]:
            set_trace(parent_trace)
            return provider.commute_leg(destination, coord, departure)

        results: Dict[str, Optional[CommuteLeg]] = {}
        pool = ThreadPoolExecutor(max_workers=min(self.max_workers, len(targets)))
        try:
            futures = {pool.submit(_one, coord): target_id for target_id, coord in targets}
            for future in as_completed(futures):
                _check_cancelled(cancel_event)
                target_id = futures[future]
                try:
                    results[target_id] = future.result()
                except ProviderUnavailable as e:
                    logger.warning("Return leg for %s unavailable: %s", target_id, e)
                    results[target_id] = None
        finally:
            # Drops queued queries on cancellation; running ones finish
            # within the provider timeout.
            pool.shutdown(wait=False, cancel_futures=True)
        return results


class BatchedReturnLegs:
    """One origin -> many destinations requests, for providers that support it."""

    name = "batched"

    def fetch(
        self,
        provider,
        destination: Coordinate,
        targets: List[Waypoint],
        departure: datetime,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Optional[CommuteLeg]]:
        if not targets:
            return {}
        return provider.commute_legs_from(destination, targets, departure)


def select_return_leg_strategy(provider, mode: str = "auto", max_workers: int = 4):
    """Pick the return-leg strategy for ``provider``.

    ``auto`` batches only when the provider advertises multi-destination
    support; ``batched`` on a provider without it falls back to per-listing.
    """
    can_batch = bool(getattr(provider, "supports_multi_destination", False))
    if mode == "per_listing":
        return PerListingReturnLegs(max_workers)
    if mode == "batched" and not can_batch:
        logger.warning(
            "RETURN_LEG_STRATEGY=batched but %s has no multi-destination support; "
            "using per-listing return legs",
            type(provider).__name__,
        )
        return PerListingReturnLegs(max_workers)
    if mode in ("auto", "batched") and can_batch:
        return BatchedReturnLegs()
    if mode == "auto":
        return PerListingReturnLegs(max_workers)
    raise ValueError(f"Unknown return leg strategy: {mode!r}")


# =============================================================================
# Engine
# =============================================================================

class CommuteResolutionEngine:
    """Resolves bidirectional commutes for listings against one destination."""

    def __init__(
        self,
        provider,
        cache: CommuteCache,
        return_legs=None,
        max_workers: int = 4,
        forward_chunk_workers: int = 1,
        clock: Optional[Callable[[], datetime]] = None,
        tz: Optional[tzinfo] = None,
    ):
        self.provider = provider
        self.cache = cache
        self.return_legs = return_legs or select_return_leg_strategy(
            provider, "auto", max_workers
        )
        self.forward_chunk_workers = forward_chunk_workers
        self._clock = clock
        self.tz = tz

    def _departure(self, label: str) -> datetime:
        now = None
        if self._clock is not None:
            current = self._clock()
            now = current.astimezone(self.tz) if self.tz is not None else current
        return resolve_departure_time(label, now=now, tz=self.tz)

    def lookup(
        self,
        origin_id: str,
        destination: Coordinate,
        departure_label: str = DEFAULT_DEPARTURE,
        return_label: str = DEFAULT_RETURN,
    ) -> Optional[CommuteResult]:
        """Fresh cached result for one origin, without touching the provider."""
        key = CommuteKey.build(origin_id, destination, departure_label, return_label)
        entry = self.cache.get(key)
        return entry.result if entry else None

    def resolve(
        self,
        listings: Iterable,
        destination: Coordinate,
        departure_label: str = DEFAULT_DEPARTURE,
        return_label: str = DEFAULT_RETURN,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, CommuteResult]:
        """Map of listing id -> CommuteResult for every listing with known commute."""
        destination = validate_coordinate(destination.lat, destination.lng, prefix="dest")
        parse_time_label(departure_label, field="departureTime")
        parse_time_label(return_label, field="returnTime")

        results: Dict[str, CommuteResult] = {}
        work: List[Tuple[CommuteKey, Waypoint]] = []
        backoff_skips = 0

        for listing in listings:
            if not listing.id:
                logger.warning("Skipping listing without id at %s", listing.coordinate.as_param())
                continue
            key = CommuteKey.build(listing.id, destination, departure_label, return_label)
            entry = self.cache.get(key)
            if entry is not None:
                results[listing.id] = entry.result
            elif self.cache.in_backoff(key):
                backoff_skips += 1
            else:
                work.append((key, (listing.id, listing.coordinate)))

        trace = get_trace()
        if trace:
            trace.record_cache(hits=len(results), misses=len(work), backoff_skips=backoff_skips)
        logger.info(
            "Commute cache: %d hits, %d misses, %d in backoff (dest=%s,%s)",
            len(results), len(work), backoff_skips, *destination.key_parts(),
        )

        if not work:
            return results

        _check_cancelled(cancel_event)
        departure = self._departure(departure_label)
        return_at = self._departure(return_label)
        waypoints = [wp for _, wp in work]

        t0 = time.time()
        forward = self.provider.commute_legs_batch(
            waypoints, destination, departure, max_workers=self.forward_chunk_workers
        )
        _check_cancelled(cancel_event)
        backward = self.return_legs.fetch(
            self.provider, destination, waypoints, return_at, cancel_event
        )
        _check_cancelled(cancel_event)

        resolved = 0
        for key, (listing_id, _) in work:
            to_leg = forward.get(listing_id)
            from_leg = backward.get(listing_id)
            if to_leg is None or from_leg is None:
                self.cache.record_failure(key)
                continue
            result = CommuteResult.from_legs(to_leg.duration_minutes, from_leg.duration_minutes)
            results[listing_id] = result
            self.cache.put(key, result)
            resolved += 1

        logger.info(
            "Resolved %d/%d commutes in %dms (return legs: %s)",
            resolved, len(work), int((time.time() - t0) * 1000), self.return_legs.name,
        )
        return results

    def resolve_pair(
        self,
        origin: Coordinate,
        destination: Coordinate,
        departure_label: str = DEFAULT_DEPARTURE,
        return_label: str = DEFAULT_RETURN,
    ) -> PairCommute:
        """Uncached round trip for an ad-hoc origin.

        Raises ProviderUnavailable when either leg cannot be computed.
        """
        origin = validate_coordinate(origin.lat, origin.lng, prefix="origin")
        destination = validate_coordinate(destination.lat, destination.lng, prefix="dest")
        parse_time_label(departure_label, field="departureTime")
        parse_time_label(return_label, field="returnTime")

        to_leg = self.provider.commute_leg(origin, destination, self._departure(departure_label))
        if to_leg is None:
            raise ProviderUnavailable("google_maps", "Could not calculate commute to destination")
        from_leg = self.provider.commute_leg(destination, origin, self._departure(return_label))
        if from_leg is None:
            raise ProviderUnavailable("google_maps", "Could not calculate commute from destination")
        return PairCommute(
            result=CommuteResult.from_legs(to_leg.duration_minutes, from_leg.duration_minutes),
            distance_to_miles=to_leg.distance_miles,
            distance_from_miles=from_leg.distance_miles,
        )
