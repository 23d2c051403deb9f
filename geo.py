"""Coordinates, validation and cache-key normalisation."""

import math
from dataclasses import dataclass
from typing import Any, Tuple

from errors import InvalidInput

# 4 decimal places is ~11 m; destinations closer than that share a cache partition.
CACHE_PRECISION = 4
_SCALE = 10 ** CACHE_PRECISION

MILES_PER_DEGREE_LAT = 69.0


@dataclass(frozen=True)
class Coordinate:
    lat: float
    lng: float

    def as_param(self) -> str:
        """Google-style "lat,lng" string."""
        return f"{self.lat},{self.lng}"

    def rounded(self) -> "Coordinate":
        return Coordinate(round4(self.lat), round4(self.lng))

    def key_parts(self) -> Tuple[str, str]:
        """Fixed-width string encoding of the rounded coordinate."""
        r = self.rounded()
        return f"{r.lat:.{CACHE_PRECISION}f}", f"{r.lng:.{CACHE_PRECISION}f}"


def round4(value: float) -> float:
    """Round half up to 4 decimal places.

    Uses floor(x + 0.5) rather than round() so .5 boundaries do not flip
    with banker's rounding.
    """
    return math.floor(value * _SCALE + 0.5) / _SCALE


def _to_float(value: Any, field: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidInput(field, f"expected a number, got {value!r}")
    if not math.isfinite(number):
        raise InvalidInput(field, "must be finite")
    return number


def validate_coordinate(lat: Any, lng: Any, prefix: str = "") -> Coordinate:
    """Build a Coordinate, raising InvalidInput with the offending field name."""
    lat_field = f"{prefix}lat" if not prefix else f"{prefix}Lat"
    lng_field = f"{prefix}lng" if not prefix else f"{prefix}Lng"
    lat_f = _to_float(lat, lat_field)
    lng_f = _to_float(lng, lng_field)
    if not -90.0 <= lat_f <= 90.0:
        raise InvalidInput(lat_field, "must be between -90 and 90")
    if not -180.0 <= lng_f <= 180.0:
        raise InvalidInput(lng_field, "must be between -180 and 180")
    return Coordinate(lat_f, lng_f)


def bounding_box(center: Coordinate, radius_miles: float) -> Tuple[float, float, float, float]:
    """Return (south, north, west, east) for a rough radius search."""
    lat_delta = radius_miles / MILES_PER_DEGREE_LAT
    # cos() reaches 0 at the poles; clamp so the box degrades to "all longitudes".
    cos_lat = max(math.cos(math.radians(center.lat)), 1e-6)
    lng_delta = min(radius_miles / (MILES_PER_DEGREE_LAT * cos_lat), 180.0)
    return (
        center.lat - lat_delta,
        center.lat + lat_delta,
        center.lng - lng_delta,
        center.lng + lng_delta,
    )
