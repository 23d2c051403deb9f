"""Listing records and search filters shared by the store, RentCast and scoring."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple

from geo import Coordinate

PROPERTY_TYPES = ("apartment", "house", "condo", "townhouse", "multi-family", "other")

_PROPERTY_TYPE_ALIASES = {
    "single family": "house",
    "house": "house",
    "apartment": "apartment",
    "condo": "condo",
    "condominium": "condo",
    "townhouse": "townhouse",
    "townhome": "townhouse",
    "multi family": "multi-family",
    "duplex": "multi-family",
    "triplex": "multi-family",
}


def normalize_property_type(raw: Optional[str]) -> str:
    """Map a provider's property type onto one of PROPERTY_TYPES."""
    if not raw:
        return "other"
    key = raw.lower().replace("_", " ").replace("-", " ").strip()
    return _PROPERTY_TYPE_ALIASES.get(key, "other")


@dataclass
class Listing:
    external_id: str
    address: str
    lat: float
    lng: float
    price: float
    bedrooms: int
    bathrooms: float
    property_type: str = "other"
    sqft: Optional[float] = None
    city: str = ""
    state: str = ""
    zip_code: str = ""
    image_url: Optional[str] = None
    listing_url: str = ""
    # Assigned by the listing store; the commute cache is keyed on it.
    id: str = ""
    fetched_at: Optional[datetime] = None

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.lat, self.lng)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "externalId": self.external_id,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "zipCode": self.zip_code,
            "latitude": self.lat,
            "longitude": self.lng,
            "price": self.price,
            "bedrooms": self.bedrooms,
            "bathrooms": self.bathrooms,
            "sqft": self.sqft,
            "propertyType": self.property_type,
            "imageUrl": self.image_url,
            "listingUrl": self.listing_url,
            "fetchedAt": self.fetched_at.isoformat() if self.fetched_at else None,
        }


@dataclass(frozen=True)
class ListingFilters:
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    min_bedrooms: Optional[int] = None
    max_bedrooms: Optional[int] = None
    property_types: Tuple[str, ...] = field(default_factory=tuple)
