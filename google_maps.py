"""
Google Maps client: Distance Matrix commute legs and geocoding.

Commute legs are driving-only. When a departure instant is supplied the
request asks for the "best_guess" traffic model and the leg uses
duration_in_traffic, falling back to the free-flow duration when Google
omits traffic data.

Batch calls never raise. A chunk that fails as a whole (timeout, transport
error, HTTP error, non-OK top-level status, malformed rows) marks every id
in that chunk None; an element with a non-OK status marks only its own id.
"""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import requests

from departure_time import to_epoch_seconds
from errors import NotFound, ProviderUnavailable
from geo import Coordinate
from rr_trace import get_trace, set_trace

logger = logging.getLogger(__name__)

GOOGLE_MAPS_BASE_URL = "https://maps.googleapis.com/maps/api"
METERS_PER_MILE = 1609.34

# (id, coordinate) pairs as accepted by the batch calls.
Waypoints = Sequence[Tuple[str, Coordinate]]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class CommuteLeg:
    """One directional driving estimate."""
    duration_seconds: int
    distance_meters: int
    in_traffic: bool = False

    @property
    def duration_minutes(self) -> int:
        return _round_half_up(self.duration_seconds / 60)

    @property
    def distance_miles(self) -> float:
        return math.floor(self.distance_meters / METERS_PER_MILE * 10 + 0.5) / 10


@dataclass(frozen=True)
class GeocodeResult:
    formatted_address: str
    coordinate: Coordinate
    place_id: str = ""


def parse_element(element: dict) -> Optional[CommuteLeg]:
    """Turn one Distance Matrix element into a CommuteLeg, or None."""
    if not isinstance(element, dict) or element.get("status") != "OK":
        return None
    duration = element.get("duration")
    distance = element.get("distance")
    if not isinstance(duration, dict) or not isinstance(distance, dict):
        return None
    traffic = element.get("duration_in_traffic")
    try:
        if isinstance(traffic, dict) and traffic.get("value") is not None:
            return CommuteLeg(int(traffic["value"]), int(distance["value"]), in_traffic=True)
        return CommuteLeg(int(duration["value"]), int(distance["value"]))
    except (KeyError, TypeError, ValueError):
        return None


class GoogleMapsClient:
    """Client for the Google Maps Distance Matrix and Geocoding APIs."""

    # Per-call timeout in seconds.  A timed-out call is treated exactly like
    # a transport failure.
    DEFAULT_TIMEOUT = 10

    # Distance Matrix allows up to 25 origins or 25 destinations per request.
    MAX_ORIGINS_PER_REQUEST = 25
    MAX_DESTINATIONS_PER_REQUEST = 25

    # One origin to many destinations works in a single request, which lets
    # the engine batch return legs.
    supports_multi_destination = True

    def __init__(self, api_key: str, timeout: Optional[int] = None,
                 base_url: str = GOOGLE_MAPS_BASE_URL):
        self.api_key = api_key
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.base_url = base_url

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _traced_get(self, endpoint_name: str, url: str, params: dict) -> dict:
        """GET with trace recording; any failure becomes ProviderUnavailable."""
        t0 = time.time()
        trace = get_trace()
        # Fresh session per request: batch chunks and return legs run on
        # worker threads and requests.Session is not thread-safe.
        try:
            with requests.Session() as session:
                session.trust_env = False
                response = session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            if trace:
                trace.record_api_call(
                    service="google_maps",
                    endpoint=endpoint_name,
                    elapsed_ms=int((time.time() - t0) * 1000),
                    status_code=0,
                    provider_status=type(e).__name__,
                )
            raise ProviderUnavailable("google_maps", f"{endpoint_name} request failed: {e}")

        elapsed_ms = int((time.time() - t0) * 1000)
        try:
            data = response.json()
        except ValueError:
            data = None
        provider_status = data.get("status", "") if isinstance(data, dict) else ""
        if trace:
            trace.record_api_call(
                service="google_maps",
                endpoint=endpoint_name,
                elapsed_ms=elapsed_ms,
                status_code=response.status_code,
                provider_status=provider_status,
            )

        if not response.ok:
            raise ProviderUnavailable(
                "google_maps", f"{endpoint_name} returned HTTP {response.status_code}"
            )
        if not isinstance(data, dict):
            raise ProviderUnavailable("google_maps", f"{endpoint_name} returned invalid JSON")
        return data

    def _distance_matrix(
        self,
        endpoint_name: str,
        origins: List[Coordinate],
        destinations: List[Coordinate],
        departure: Optional[datetime],
    ) -> dict:
        params = {
            "origins": "|".join(o.as_param() for o in origins),
            "destinations": "|".join(d.as_param() for d in destinations),
            "mode": "driving",
            "key": self.api_key,
        }
        if departure is not None:
            params["departure_time"] = str(to_epoch_seconds(departure))
            params["traffic_model"] = "best_guess"

        data = self._traced_get(endpoint_name, f"{self.base_url}/distancematrix/json", params)
        status = data.get("status")
        if status != "OK":
            raise ProviderUnavailable(
                "google_maps", f"Distance Matrix API failed: {status}", status=status
            )
        rows = data.get("rows")
        if not isinstance(rows, list):
            raise ProviderUnavailable("google_maps", "Distance Matrix response has no rows")
        return data

    # ------------------------------------------------------------------
    # Commute legs
    # ------------------------------------------------------------------

    def commute_leg(
        self,
        origin: Coordinate,
        destination: Coordinate,
        departure: Optional[datetime] = None,
    ) -> Optional[CommuteLeg]:
        """Driving leg between two points, or None if unavailable."""
        try:
            data = self._distance_matrix("commute_leg", [origin], [destination], departure)
            return parse_element(data["rows"][0]["elements"][0])
        except ProviderUnavailable as e:
            logger.warning("Commute leg %s -> %s unavailable: %s",
                           origin.as_param(), destination.as_param(), e)
            return None
        except (IndexError, KeyError, TypeError):
            logger.warning("Malformed Distance Matrix row for %s -> %s",
                           origin.as_param(), destination.as_param())
            return None

    def commute_legs_batch(
        self,
        origins: Waypoints,
        destination: Coordinate,
        departure: Optional[datetime] = None,
        max_workers: int = 1,
    ) -> Dict[str, Optional[CommuteLeg]]:
        """Legs from many origins to one destination, keyed by origin id.

        Splits into chunks of MAX_ORIGINS_PER_REQUEST; one request per chunk.
        Rows come back in the chunk's origin order, so row i belongs to the
        chunk's i-th id.
        """
        if not origins:
            return {}
        size = self.MAX_ORIGINS_PER_REQUEST
        chunks = [list(origins[i:i + size]) for i in range(0, len(origins), size)]

        results: Dict[str, Optional[CommuteLeg]] = {}
        if max_workers <= 1 or len(chunks) == 1:
            for chunk in chunks:
                results.update(self._origins_chunk(chunk, destination, departure))
            return results

        parent_trace = get_trace()

        def _run(chunk):
            set_trace(parent_trace)
            return self._origins_chunk(chunk, destination, departure)

        with ThreadPoolExecutor(max_workers=min(max_workers, len(chunks))) as pool:
            for chunk_result in pool.map(_run, chunks):
                results.update(chunk_result)
        return results

    def _origins_chunk(
        self,
        chunk: List[Tuple[str, Coordinate]],
        destination: Coordinate,
        departure: Optional[datetime],
    ) -> Dict[str, Optional[CommuteLeg]]:
        ids = [origin_id for origin_id, _ in chunk]
        try:
            data = self._distance_matrix(
                "distance_matrix_batch",
                [coord for _, coord in chunk],
                [destination],
                departure,
            )
        except ProviderUnavailable as e:
            logger.warning("Batch of %d origins unavailable: %s", len(chunk), e)
            return {origin_id: None for origin_id in ids}

        rows = data["rows"]
        if len(rows) != len(chunk):
            logger.warning(
                "Distance Matrix returned %d rows for %d origins; discarding chunk",
                len(rows), len(chunk),
            )
            return {origin_id: None for origin_id in ids}

        results: Dict[str, Optional[CommuteLeg]] = {}
        for origin_id, row in zip(ids, rows):
            elements = row.get("elements") if isinstance(row, dict) else None
            if not isinstance(elements, list) or not elements:
                logger.warning("Malformed Distance Matrix row for origin %s", origin_id)
                results[origin_id] = None
                continue
            results[origin_id] = parse_element(elements[0])
        return results

    def commute_legs_from(
        self,
        origin: Coordinate,
        destinations: Waypoints,
        departure: Optional[datetime] = None,
    ) -> Dict[str, Optional[CommuteLeg]]:
        """Legs from one origin to many destinations, keyed by destination id."""
        results: Dict[str, Optional[CommuteLeg]] = {}
        size = self.MAX_DESTINATIONS_PER_REQUEST
        for i in range(0, len(destinations), size):
            chunk = list(destinations[i:i + size])
            ids = [dest_id for dest_id, _ in chunk]
            try:
                data = self._distance_matrix(
                    "distance_matrix_from",
                    [origin],
                    [coord for _, coord in chunk],
                    departure,
                )
                elements = data["rows"][0]["elements"]
                if not isinstance(elements, list):
                    raise TypeError(f"elements is {type(elements).__name__}")
            except ProviderUnavailable as e:
                logger.warning("Batch of %d destinations unavailable: %s", len(chunk), e)
                results.update({dest_id: None for dest_id in ids})
                continue
            except (IndexError, KeyError, TypeError):
                logger.warning("Malformed Distance Matrix row for %d destinations", len(chunk))
                results.update({dest_id: None for dest_id in ids})
                continue

            if len(elements) != len(chunk):
                logger.warning(
                    "Distance Matrix returned %d elements for %d destinations; discarding chunk",
                    len(elements), len(chunk),
                )
                results.update({dest_id: None for dest_id in ids})
                continue
            for dest_id, element in zip(ids, elements):
                results[dest_id] = parse_element(element)
        return results

    # ------------------------------------------------------------------
    # Geocoding
    # ------------------------------------------------------------------

    def geocode(self, address: str) -> GeocodeResult:
        """Convert an address to coordinates; NotFound when Google has no match."""
        data = self._traced_get(
            "geocode", f"{self.base_url}/geocode/json",
            {"address": address, "key": self.api_key},
        )
        status = data.get("status")
        if status == "ZERO_RESULTS" or (status == "OK" and not data.get("results")):
            raise NotFound(f"Address not found: {address}")
        if status != "OK":
            raise ProviderUnavailable("google_maps", f"Geocoding failed: {status}", status=status)

        top = data["results"][0]
        location = top["geometry"]["location"]
        return GeocodeResult(
            formatted_address=top.get("formatted_address", address),
            coordinate=Coordinate(float(location["lat"]), float(location["lng"])),
            place_id=top.get("place_id", ""),
        )

    def reverse_geocode(self, coordinate: Coordinate) -> str:
        """Formatted address nearest to ``coordinate``."""
        data = self._traced_get(
            "reverse_geocode", f"{self.base_url}/geocode/json",
            {"latlng": coordinate.as_param(), "key": self.api_key},
        )
        status = data.get("status")
        if status == "ZERO_RESULTS" or (status == "OK" and not data.get("results")):
            raise NotFound(f"Location not found: {coordinate.as_param()}")
        if status != "OK":
            raise ProviderUnavailable(
                "google_maps", f"Reverse geocoding failed: {status}", status=status
            )
        return data["results"][0].get("formatted_address", "")
