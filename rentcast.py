"""
RentCast client: active long-term rental listings around a point.

The API is treated as a plain data source. Whatever it returns is filtered
to listings with a usable price and recent activity, then mapped onto our
Listing record. A failed fetch raises ProviderUnavailable; search.py falls
back to the listings already in the store.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import requests

from errors import ProviderUnavailable
from geo import Coordinate
from listings import Listing, ListingFilters, normalize_property_type
from rr_trace import get_trace

logger = logging.getLogger(__name__)

RENTCAST_BASE_URL = "https://api.rentcast.io/v1"

MAX_LISTING_AGE_DAYS = 30
MAX_REASONABLE_RENT = 50000


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_current(record: dict, now: Optional[datetime] = None) -> bool:
    """Priced sensibly and seen (or listed) within MAX_LISTING_AGE_DAYS."""
    price = record.get("price")
    if not isinstance(price, (int, float)) or price <= 0 or price > MAX_REASONABLE_RENT:
        return False
    seen = _parse_date(record.get("lastSeenDate")) or _parse_date(record.get("listedDate"))
    if seen is not None:
        now = now or datetime.now(timezone.utc)
        if now - seen > timedelta(days=MAX_LISTING_AGE_DAYS):
            return False
    return True


def transform_listing(record: dict) -> Listing:
    """Map a RentCast record onto a Listing. Raises KeyError/TypeError/ValueError on bad records."""
    formatted = record.get("formattedAddress") or record.get("addressLine1") or "Unknown Address"
    listing_url = record.get("listingUrl") or (
        "https://www.zillow.com/homes/" + "-".join(formatted.split()) + "_rb/"
    )
    return Listing(
        external_id=str(record["id"]),
        address=formatted,
        city=record.get("city") or "",
        state=record.get("state") or "",
        zip_code=record.get("zipCode") or "",
        lat=float(record["latitude"]),
        lng=float(record["longitude"]),
        price=float(record["price"]),
        bedrooms=int(record.get("bedrooms") or 0),
        bathrooms=float(record.get("bathrooms") or 0),
        sqft=float(record["squareFootage"]) if record.get("squareFootage") else None,
        property_type=normalize_property_type(record.get("propertyType")),
        image_url=None,
        listing_url=listing_url,
    )


class RentCastClient:
    DEFAULT_TIMEOUT = 15

    def __init__(self, api_key: str, timeout: Optional[int] = None,
                 base_url: str = RENTCAST_BASE_URL):
        self.api_key = api_key
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.base_url = base_url

    def _get(self, endpoint_name: str, url: str, params: dict):
        t0 = time.time()
        trace = get_trace()
        try:
            with requests.Session() as session:
                session.trust_env = False
                response = session.get(
                    url,
                    params=params,
                    headers={"Accept": "application/json", "X-Api-Key": self.api_key},
                    timeout=self.timeout,
                )
        except requests.exceptions.RequestException as e:
            if trace:
                trace.record_api_call("rentcast", endpoint_name,
                                      int((time.time() - t0) * 1000), 0, type(e).__name__)
            raise ProviderUnavailable("rentcast", f"request failed: {e}")

        if trace:
            trace.record_api_call("rentcast", endpoint_name,
                                  int((time.time() - t0) * 1000), response.status_code)
        if not response.ok:
            logger.error("RentCast API error: %s %s", response.status_code, response.text[:200])
            raise ProviderUnavailable("rentcast", f"HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError:
            raise ProviderUnavailable("rentcast", "invalid JSON response")

    def fetch_listings(
        self,
        center: Coordinate,
        radius_miles: float,
        filters: Optional[ListingFilters] = None,
        limit: int = 50,
    ) -> List[Listing]:
        filters = filters or ListingFilters()
        params = {
            "latitude": center.lat,
            "longitude": center.lng,
            "radius": radius_miles,
            "limit": limit,
            "status": "active",
        }
        # RentCast accepts a single property type.
        if filters.property_types:
            params["propertyType"] = filters.property_types[0]
        if filters.min_price is not None:
            params["minPrice"] = filters.min_price
        if filters.max_price is not None:
            params["maxPrice"] = filters.max_price
        if filters.min_bedrooms is not None:
            params["bedrooms"] = filters.min_bedrooms

        data = self._get("listings", f"{self.base_url}/listings/rental/long-term", params)
        if not isinstance(data, list):
            raise ProviderUnavailable("rentcast", "expected a list of listings")

        listings = []
        for record in data:
            if not isinstance(record, dict) or not is_current(record):
                continue
            try:
                listings.append(transform_listing(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed RentCast record %r: %s", record.get("id"), e)

        logger.info("RentCast: %d total, %d usable", len(data), len(listings))
        return listings
