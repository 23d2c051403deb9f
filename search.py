"""
End-to-end rental search: listings -> commutes -> value scores.

Stages (each timed on the request trace):
  fetch_listings  refresh the store from RentCast; on provider failure keep
                  going with whatever the store already holds
  commute         CommuteResolutionEngine.resolve for the stored listings
  score           value score + rating + percentile for every listing,
                  optional max-commute filter, sort
"""

import logging
import math
import threading
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Tuple

import models
from commute import DEFAULT_DEPARTURE, DEFAULT_RETURN, CommuteResolutionEngine
from departure_time import parse_time_label
from errors import InvalidInput, ProviderUnavailable
from geo import Coordinate, validate_coordinate
from listings import PROPERTY_TYPES, ListingFilters
from rentcast import RentCastClient
from rr_trace import get_trace
from scoring_config import SORT_OPTIONS
from value_score import ScoredListing, score_listings, sort_listings

logger = logging.getLogger(__name__)

MIN_RADIUS_MILES = 0.5
MAX_RADIUS_MILES = 50.0
DEFAULT_RADIUS_MILES = 10.0
MIN_MAX_COMMUTE = 5
MAX_MAX_COMMUTE = 120
STORE_RESULT_LIMIT = 100


@dataclass(frozen=True)
class SearchParams:
    destination: Coordinate
    radius_miles: float = DEFAULT_RADIUS_MILES
    departure_time: str = DEFAULT_DEPARTURE
    return_time: str = DEFAULT_RETURN
    filters: ListingFilters = field(default_factory=ListingFilters)
    max_commute_min: Optional[int] = None
    sort_by: str = "value_asc"


@dataclass
class SearchResult:
    listings: List[ScoredListing]
    used_stored_listings: bool = False


def _number(args: Mapping[str, str], name: str, lo: Optional[float] = None,
            hi: Optional[float] = None) -> Optional[float]:
    raw = args.get(name)
    if raw is None or str(raw).strip() == "":
        return None
    try:
        value = float(raw)
    except ValueError:
        raise InvalidInput(name, f"expected a number, got {raw!r}")
    if not math.isfinite(value):
        raise InvalidInput(name, "must be finite")
    if lo is not None and value < lo:
        raise InvalidInput(name, f"must be >= {lo:g}")
    if hi is not None and value > hi:
        raise InvalidInput(name, f"must be <= {hi:g}")
    return value


def _int(args: Mapping[str, str], name: str, lo: Optional[int] = None,
         hi: Optional[int] = None) -> Optional[int]:
    value = _number(args, name, lo, hi)
    if value is None:
        return None
    if value != int(value):
        raise InvalidInput(name, "must be a whole number")
    return int(value)


def _property_types(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    types = tuple(t.strip() for t in raw.split(",") if t.strip())
    unknown = [t for t in types if t not in PROPERTY_TYPES]
    if unknown:
        raise InvalidInput("propertyTypes", f"unknown property type(s): {', '.join(unknown)}")
    return types


def parse_search_args(args: Mapping[str, str]) -> SearchParams:
    """Validate query-string arguments. Raises InvalidInput naming the field."""
    if args.get("lat") in (None, "") or args.get("lng") in (None, ""):
        missing = "lat" if args.get("lat") in (None, "") else "lng"
        raise InvalidInput(missing, "is required")
    destination = validate_coordinate(args["lat"], args["lng"])

    departure = args.get("departureTime") or DEFAULT_DEPARTURE
    return_time = args.get("returnTime") or DEFAULT_RETURN
    parse_time_label(departure, field="departureTime")
    parse_time_label(return_time, field="returnTime")

    radius = _number(args, "radius", MIN_RADIUS_MILES, MAX_RADIUS_MILES)
    sort_by = args.get("sort") or "value_asc"
    if sort_by not in SORT_OPTIONS:
        raise InvalidInput("sort", f"must be one of {', '.join(SORT_OPTIONS)}")

    filters = ListingFilters(
        min_price=_number(args, "minPrice", 0),
        max_price=_number(args, "maxPrice", 0),
        min_bedrooms=_int(args, "minBedrooms", 0, 10),
        max_bedrooms=_int(args, "maxBedrooms", 0, 10),
        property_types=_property_types(args.get("propertyTypes")),
    )
    if (filters.min_price is not None and filters.max_price is not None
            and filters.min_price > filters.max_price):
        raise InvalidInput("minPrice", "must not exceed maxPrice")

    return SearchParams(
        destination=destination,
        radius_miles=radius if radius is not None else DEFAULT_RADIUS_MILES,
        departure_time=departure,
        return_time=return_time,
        filters=filters,
        max_commute_min=_int(args, "maxCommute", MIN_MAX_COMMUTE, MAX_MAX_COMMUTE),
        sort_by=sort_by,
    )


def _stage(name: str):
    trace = get_trace()
    return trace.stage(name) if trace else nullcontext()


def run_search(
    params: SearchParams,
    rentcast: Optional[RentCastClient],
    engine: CommuteResolutionEngine,
    cancel_event: Optional[threading.Event] = None,
) -> SearchResult:
    used_store = False
    with _stage("fetch_listings"):
        if rentcast is None:
            logger.warning("RentCast not configured; searching stored listings only")
            used_store = True
        else:
            try:
                fresh = rentcast.fetch_listings(
                    params.destination, params.radius_miles, params.filters
                )
                for listing in fresh:
                    models.upsert_listing(listing)
            except ProviderUnavailable as e:
                logger.warning("RentCast unavailable, falling back to stored listings: %s", e)
                used_store = True
        listings = models.find_listings(
            params.destination, params.radius_miles, params.filters, limit=STORE_RESULT_LIMIT
        )

    with _stage("commute"):
        commutes = engine.resolve(
            listings,
            params.destination,
            params.departure_time,
            params.return_time,
            cancel_event=cancel_event,
        )

    with _stage("score"):
        scored = score_listings(listings, commutes)
        if params.max_commute_min is not None:
            # Unknown commutes stay: a missing estimate is not a long commute.
            scored = [
                s for s in scored
                if s.avg_commute_min is None or s.avg_commute_min <= params.max_commute_min
            ]
        ordered = sort_listings(scored, params.sort_by)

    models.log_search(params.destination, params.radius_miles, len(ordered))
    logger.info(
        "Search at %s: %d listings, %d with commute%s",
        params.destination.as_param(), len(ordered), len(commutes),
        " (stored listings)" if used_store else "",
    )
    return SearchResult(listings=ordered, used_stored_listings=used_store)
