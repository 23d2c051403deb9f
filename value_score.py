"""
Value score: one lower-is-better number per listing.

    score = price / sqft * 50          (sqft estimated when missing)
          + avg_commute_min * 2        (flat 50 when commute is unknown)
          - bedrooms * 10
    clamped at 0, rounded half up to 2 decimals

Scores are derived, never stored; recompute whenever price, size or commute
changes. Listings with unknown commute are scored with the penalty and kept
in results, never dropped.
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from commute_cache import CommuteResult
from errors import InvalidInput
from listings import Listing
from scoring_config import SORT_OPTIONS, VALUE_MODEL, ValueModel


def estimate_area(bedrooms: int, property_type: str, model: ValueModel = VALUE_MODEL) -> float:
    """Estimated square footage from bedroom count and property type."""
    est = model.area_estimates.get(property_type, model.fallback_area)
    return est.base_sqft + (bedrooms - 1) * est.per_extra_bedroom_sqft


def score(
    listing: Listing,
    commute: Optional[CommuteResult],
    model: ValueModel = VALUE_MODEL,
) -> float:
    # sqft of 0 is treated as missing, same as None
    area = listing.sqft if listing.sqft else estimate_area(
        listing.bedrooms, listing.property_type, model
    )
    price_component = listing.price / area * model.price_weight
    if commute is not None:
        commute_component = commute.avg_commute_min * model.commute_weight
    else:
        commute_component = model.unknown_commute_penalty
    bedroom_discount = listing.bedrooms * model.bedroom_discount

    raw = price_component + commute_component - bedroom_discount
    return max(0.0, math.floor(raw * 100 + 0.5) / 100)


def get_value_rating(value: float, model: ValueModel = VALUE_MODEL) -> str:
    """Display bucket for a score; not used for ordering."""
    for band in model.rating_bands:
        if value < band.upper_bound:
            return band.label
    return model.worst_rating


@dataclass
class ScoredListing:
    listing: Listing
    commute: Optional[CommuteResult]
    value_score: float
    value_rating: str
    percentile: Optional[int] = None

    @property
    def avg_commute_min(self) -> Optional[int]:
        return self.commute.avg_commute_min if self.commute else None

    def to_dict(self) -> dict:
        data = self.listing.to_dict()
        data.update({
            "commuteToMin": self.commute.commute_to_min if self.commute else None,
            "commuteFromMin": self.commute.commute_from_min if self.commute else None,
            "avgCommuteMin": self.avg_commute_min,
            "valueScore": self.value_score,
            "valueRating": self.value_rating,
            "percentile": self.percentile,
        })
        return data


def sort_listings(items: Sequence[ScoredListing], sort_by: str) -> List[ScoredListing]:
    """Return a new list in the requested order. Python's sort is stable.

    ``commute_asc`` places listings with unknown commute after all known ones.
    """
    if sort_by == "price_asc":
        return sorted(items, key=lambda s: s.listing.price)
    if sort_by == "price_desc":
        return sorted(items, key=lambda s: s.listing.price, reverse=True)
    if sort_by == "commute_asc":
        return sorted(
            items,
            key=lambda s: (s.avg_commute_min is None, s.avg_commute_min or 0),
        )
    if sort_by == "value_asc":
        return sorted(items, key=lambda s: s.value_score)
    raise InvalidInput("sort", f"must be one of {', '.join(SORT_OPTIONS)}")


def percentile_rank(item: ScoredListing, population: Sequence[ScoredListing]) -> int:
    """Share of ``population`` this listing scores at least as well as, 0-100."""
    if not population:
        return 0
    better = sum(1 for other in population if other.value_score < item.value_score)
    return int(math.floor((len(population) - better) / len(population) * 100 + 0.5))


def score_listings(
    listings: Sequence[Listing],
    commutes: Dict[str, CommuteResult],
    model: ValueModel = VALUE_MODEL,
) -> List[ScoredListing]:
    """Score every listing, with or without a known commute, and rank them."""
    scored = []
    for listing in listings:
        commute = commutes.get(listing.id)
        value = score(listing, commute, model)
        scored.append(ScoredListing(listing, commute, value, get_value_rating(value, model)))
    for item in scored:
        item.percentile = percentile_rank(item, scored)
    return scored
