"""Route tests for app.py: JSON endpoints, error mapping and request ids.

Services are swapped for fakes per test; nothing touches the network.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

import app as rentroute_app
from app_config import AppConfig
from commute import CommuteResolutionEngine
from commute_cache import CommuteCache, CommuteKey, CommuteResult
from conftest import FakeProvider, leg, make_listing
from errors import NotFound, ProviderUnavailable
from geo import Coordinate
from google_maps import GeocodeResult
from search import SearchResult

CONFIG = AppConfig(google_maps_api_key="g", rentcast_api_key="r")


@pytest.fixture(autouse=True)
def _reset_limits():
    rentroute_app.limiter.reset()
    yield


def _install(monkeypatch, provider=None, maps=None, rentcast=None, config=CONFIG, fixed_now=None):
    provider = provider or FakeProvider()
    clock = (lambda: fixed_now) if fixed_now else None
    engine = CommuteResolutionEngine(provider, CommuteCache(), clock=clock)
    services = rentroute_app.Services(
        config=config,
        maps=maps if maps is not None else MagicMock(),
        rentcast=rentcast,
        engine=engine,
    )
    monkeypatch.setattr(rentroute_app, "services", services)
    return services


class TestHealthz:
    def test_ok(self, client, monkeypatch):
        _install(monkeypatch)
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.get_json() == {"status": "ok", "missing_keys": []}

    def test_degraded(self, client, monkeypatch):
        _install(monkeypatch, config=AppConfig(google_maps_api_key="g"))
        resp = client.get("/healthz")
        assert resp.status_code == 503
        assert resp.get_json()["missing_keys"] == ["RENTCAST_API_KEY"]


class TestListings:
    def test_missing_lat(self, client, monkeypatch):
        _install(monkeypatch)
        resp = client.get("/api/listings?lng=-74.0")
        assert resp.status_code == 400
        body = resp.get_json()
        assert body["field"] == "lat"
        assert body["details"][0]["field"] == "lat"
        assert body["request_id"]

    def test_bad_time(self, client, monkeypatch):
        _install(monkeypatch)
        resp = client.get("/api/listings?lat=40.7&lng=-74.0&departureTime=8am")
        assert resp.status_code == 400
        assert resp.get_json()["field"] == "departureTime"

    def test_non_finite_number(self, client, monkeypatch):
        _install(monkeypatch)
        resp = client.get("/api/listings?lat=40.7&lng=-74.0&maxCommute=nan")
        assert resp.status_code == 400
        assert resp.get_json()["field"] == "maxCommute"

    def test_results(self, client, monkeypatch, fixed_now):
        rentcast = MagicMock()
        rentcast.fetch_listings.return_value = [
            make_listing("", external_id="a", lat=40.72, lng=-74.00, price=1500, sqft=750, bedrooms=2),
        ]
        _install(monkeypatch, rentcast=rentcast, fixed_now=fixed_now)
        resp = client.get("/api/listings?lat=40.7128&lng=-74.0060")
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["total"] == 1
        listing = body["listings"][0]
        assert listing["externalId"] == "a"
        assert listing["avgCommuteMin"] is None
        assert listing["valueScore"] == 130.0
        assert listing["valueRating"] == "poor"
        assert body["usedStoredListings"] is False

    def test_missing_google_key(self, client, monkeypatch):
        services = _install(monkeypatch, config=AppConfig(rentcast_api_key="r"))
        services.maps = None
        services.engine = None
        resp = client.get("/api/listings?lat=40.7&lng=-74.0")
        assert resp.status_code == 503
        assert resp.get_json()["missing_keys"] == ["GOOGLE_MAPS_API_KEY"]

    def test_search_gets_cancel_event(self, client, monkeypatch):
        _install(monkeypatch)
        search = MagicMock(return_value=SearchResult(listings=[]))
        monkeypatch.setattr(rentroute_app, "run_search", search)
        assert client.get("/api/listings?lat=40.7&lng=-74.0").status_code == 200
        cancel = search.call_args.kwargs["cancel_event"]
        assert isinstance(cancel, threading.Event)
        assert not cancel.is_set()

    def test_deadline_cancels_search(self, client, monkeypatch, fixed_now):
        class SlowProvider(FakeProvider):
            def commute_legs_batch(self, origins, destination, departure=None, max_workers=1):
                time.sleep(0.5)
                return super().commute_legs_batch(origins, destination, departure, max_workers)

        rentcast = MagicMock()
        rentcast.fetch_listings.return_value = [
            make_listing("", external_id="a", lat=40.72, lng=-74.00),
        ]
        config = AppConfig(google_maps_api_key="g", rentcast_api_key="r",
                           search_deadline_seconds=0.05)
        _install(monkeypatch, provider=SlowProvider(), rentcast=rentcast,
                 config=config, fixed_now=fixed_now)
        resp = client.get("/api/listings?lat=40.7128&lng=-74.0060")
        assert resp.status_code == 504
        assert resp.get_json()["request_id"]


class TestCommute:
    URL = "/api/commute?originLat=40.76&originLng=-73.98&destLat=40.7128&destLng=-74.0060"

    def test_computes_round_trip(self, client, monkeypatch, fixed_now):
        class PairProvider(FakeProvider):
            def commute_leg(self, a, b, departure=None):
                return leg(20, miles=8.0) if a == Coordinate(40.76, -73.98) else leg(30, miles=8.5)

        _install(monkeypatch, provider=PairProvider(), fixed_now=fixed_now)
        resp = client.get(self.URL)
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["commuteToMin"] == 20
        assert body["commuteFromMin"] == 30
        assert body["avgCommuteMin"] == 25
        assert body["distanceToMiles"] == 8.0
        assert body["cached"] is False

    def test_listing_id_served_from_cache(self, client, monkeypatch):
        services = _install(monkeypatch)
        services.engine.cache.put(
            CommuteKey.build("L1", Coordinate(40.7128, -74.006), "08:00", "17:00"),
            CommuteResult.from_legs(12, 14),
        )
        resp = client.get(self.URL + "&listingId=L1")
        body = resp.get_json()
        assert body["cached"] is True
        assert body["avgCommuteMin"] == 13

    def test_listing_id_result_cached(self, client, monkeypatch, fixed_now):
        class AlwaysTen(FakeProvider):
            def commute_leg(self, a, b, departure=None):
                return leg(10)

        services = _install(monkeypatch, provider=AlwaysTen(), fixed_now=fixed_now)
        client.get(self.URL + "&listingId=L2")
        assert services.engine.lookup("L2", Coordinate(40.7128, -74.006)) == CommuteResult(10, 10, 10)

    def test_leg_unavailable_is_502(self, client, monkeypatch, fixed_now):
        _install(monkeypatch, fixed_now=fixed_now)
        resp = client.get(self.URL)
        assert resp.status_code == 502
        assert "request_id" in resp.get_json()

    def test_invalid_origin(self, client, monkeypatch):
        _install(monkeypatch)
        resp = client.get("/api/commute?originLat=40.76&originLng=abc&destLat=40.7&destLng=-74.0")
        assert resp.status_code == 400
        assert resp.get_json()["field"] == "originLng"

    def test_invalid_return_time(self, client, monkeypatch):
        _install(monkeypatch)
        resp = client.get(self.URL + "&returnTime=5pm")
        assert resp.status_code == 400
        assert resp.get_json()["field"] == "returnTime"


class TestGeocode:
    def test_forward(self, client, monkeypatch):
        maps = MagicMock()
        maps.geocode.return_value = GeocodeResult("1 Main St", Coordinate(40.7, -74.0), "pid")
        _install(monkeypatch, maps=maps)
        resp = client.get("/api/geocode?address=1+Main+St")
        assert resp.status_code == 200
        assert resp.get_json() == {"address": "1 Main St", "lat": 40.7, "lng": -74.0, "placeId": "pid"}
        maps.geocode.assert_called_once_with("1 Main St")

    def test_reverse(self, client, monkeypatch):
        maps = MagicMock()
        maps.reverse_geocode.return_value = "1 Main St"
        _install(monkeypatch, maps=maps)
        resp = client.get("/api/geocode?lat=40.7&lng=-74.0")
        assert resp.get_json()["address"] == "1 Main St"

    def test_not_found(self, client, monkeypatch):
        maps = MagicMock()
        maps.geocode.side_effect = NotFound("Address not found: nowhere")
        _install(monkeypatch, maps=maps)
        resp = client.get("/api/geocode?address=nowhere")
        assert resp.status_code == 404

    def test_provider_down(self, client, monkeypatch):
        maps = MagicMock()
        maps.geocode.side_effect = ProviderUnavailable("google_maps", "Geocoding failed: REQUEST_DENIED")
        _install(monkeypatch, maps=maps)
        assert client.get("/api/geocode?address=x").status_code == 502

    def test_no_params(self, client, monkeypatch):
        _install(monkeypatch)
        resp = client.get("/api/geocode")
        assert resp.status_code == 400


def test_unknown_route_is_json_404(client):
    resp = client.get("/api/nope")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "Not found"


def test_build_services_without_keys():
    services = rentroute_app.build_services(AppConfig())
    assert services.maps is None
    assert services.engine is None
    assert services.rentcast is None


def test_build_services_selects_batched_return_legs():
    services = rentroute_app.build_services(CONFIG)
    assert services.engine.return_legs.name == "batched"
    assert services.rentcast is not None
