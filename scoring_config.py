"""
Value-score model configuration for RentRoute.

Owns every numeric constant that affects the value score. Frozen
dataclasses give type checking without YAML/JSON indirection. Bump
``version`` on any change that alters score outputs.
"""

from dataclasses import dataclass, field
from typing import Dict, Tuple


@dataclass(frozen=True)
class AreaEstimate:
    """Square-footage estimate used when a listing omits sqft."""
    base_sqft: float
    per_extra_bedroom_sqft: float


@dataclass(frozen=True)
class RatingBand:
    """Scores strictly below ``upper_bound`` earn ``label``.

    Bands are evaluated in order; the first match wins.
    """
    upper_bound: float
    label: str


@dataclass(frozen=True)
class ValueModel:
    version: str
    area_estimates: Dict[str, AreaEstimate] = field(hash=False)
    fallback_area: AreaEstimate
    price_weight: float          # multiplier on $/sqft
    commute_weight: float        # points per average commute minute
    unknown_commute_penalty: float
    bedroom_discount: float      # points subtracted per bedroom
    rating_bands: Tuple[RatingBand, ...]
    worst_rating: str


_DEFAULT_PER_BEDROOM = 250.0

VALUE_MODEL = ValueModel(
    version="1.0.0",
    area_estimates={
        "apartment": AreaEstimate(650.0, _DEFAULT_PER_BEDROOM),
        "condo": AreaEstimate(750.0, _DEFAULT_PER_BEDROOM),
        "townhouse": AreaEstimate(1000.0, _DEFAULT_PER_BEDROOM),
        "house": AreaEstimate(1200.0, 350.0),
        "multi-family": AreaEstimate(800.0, _DEFAULT_PER_BEDROOM),
        "other": AreaEstimate(700.0, _DEFAULT_PER_BEDROOM),
    },
    fallback_area=AreaEstimate(700.0, _DEFAULT_PER_BEDROOM),
    price_weight=50.0,
    # 30 min average commute = +60 points, 60 min = +120
    commute_weight=2.0,
    unknown_commute_penalty=50.0,
    bedroom_discount=10.0,
    rating_bands=(
        RatingBand(50.0, "excellent"),
        RatingBand(75.0, "good"),
        RatingBand(100.0, "fair"),
    ),
    worst_rating="poor",
)

SORT_OPTIONS = ("price_asc", "price_desc", "commute_asc", "value_asc")
