"""Shared fixtures for the RentRoute test suite.

Points the DB at a temporary file before any module reads RENTROUTE_DB_PATH,
wipes every table between tests, and provides listing / provider fakes.
"""

import atexit
import os
import tempfile
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

# Point the DB at a temp file BEFORE importing app/models (they read DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)
os.environ["RENTROUTE_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

os.environ.setdefault("GOOGLE_MAPS_API_KEY", "fake-key-for-tests")
os.environ.setdefault("RENTCAST_API_KEY", "fake-rentcast-key")

from app import app  # noqa: E402
from geo import Coordinate  # noqa: E402
from google_maps import CommuteLeg  # noqa: E402
from listings import Listing  # noqa: E402
from models import init_db, _get_db  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_db():
    """Empty every table before each test, keeping the schema."""
    init_db()
    conn = _get_db()
    for table in ("commute_cache", "commute_failures", "listings", "search_history"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    yield


@pytest.fixture()
def client():
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c


def make_listing(listing_id: str = "a", lat: float = 40.75, lng: float = -73.99,
                 price: float = 2000, bedrooms: int = 1, sqft: Optional[float] = None,
                 property_type: str = "apartment", **kwargs) -> Listing:
    return Listing(
        id=listing_id,
        external_id=kwargs.pop("external_id", f"ext-{listing_id}"),
        address=kwargs.pop("address", f"{listing_id} Main St"),
        lat=lat,
        lng=lng,
        price=price,
        bedrooms=bedrooms,
        bathrooms=kwargs.pop("bathrooms", 1),
        sqft=sqft,
        property_type=property_type,
        **kwargs,
    )


def leg(minutes: int, miles: float = 10.0) -> CommuteLeg:
    return CommuteLeg(duration_seconds=minutes * 60, distance_meters=int(miles * 1609.34))


class FakeProvider:
    """In-memory commute provider.

    ``forward`` maps listing id -> leg for listing -> destination batches.
    ``backward`` maps (lat, lng) of the leg's destination -> leg, or an
    Exception instance to raise.
    """

    supports_multi_destination = False

    def __init__(self, forward: Dict[str, Optional[CommuteLeg]] = None,
                 backward: Dict[tuple, object] = None):
        self.forward = forward or {}
        self.backward = backward or {}
        self.batch_calls: List[dict] = []
        self.single_calls: List[tuple] = []

    def commute_legs_batch(self, origins, destination, departure=None, max_workers=1):
        self.batch_calls.append({
            "ids": [origin_id for origin_id, _ in origins],
            "destination": destination,
            "departure": departure,
        })
        return {origin_id: self.forward.get(origin_id) for origin_id, _ in origins}

    def commute_leg(self, origin, destination, departure=None):
        self.single_calls.append((origin, destination, departure))
        outcome = self.backward.get((destination.lat, destination.lng))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture()
def fixed_now():
    # Friday 2026-10-16 09:00 UTC
    return datetime(2026, 10, 16, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def destination():
    return Coordinate(40.7128, -74.0060)
