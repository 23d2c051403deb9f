"""
Error taxonomy for RentRoute.

Four families, each mapped to one HTTP status class in app.py:

  ConfigurationError   missing API credential        -> 503
  InvalidInput         malformed coordinate / label   -> 400 (field-level)
  NotFound             geocoding produced no result   -> 404
  ProviderUnavailable  timeout, transport, bad status -> 502 at the edge,
                       but recovered locally (per-listing omission) inside
                       the commute engine
"""

from typing import List, Optional


class RentRouteError(Exception):
    """Base class for all RentRoute errors."""


class ConfigurationError(RentRouteError):
    """A required external API credential is not configured."""

    def __init__(self, missing_keys: List[str]):
        self.missing_keys = list(missing_keys)
        super().__init__(
            "Missing required configuration: " + ", ".join(self.missing_keys)
        )


class InvalidInput(RentRouteError, ValueError):
    """Client-supplied value failed validation before any external call."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict:
        return {"field": self.field, "message": self.message}


class InvalidTimeFormat(InvalidInput):
    """A departure/return label is not a 24-hour HH:MM string."""

    def __init__(self, label: str, field: str = "time"):
        self.label = label
        super().__init__(field, f"expected HH:MM (24-hour), got {label!r}")


class NotFound(RentRouteError):
    """Geocoding (or reverse geocoding) returned no result."""


class ProviderUnavailable(RentRouteError):
    """An external provider failed: timeout, transport error, non-OK status."""

    def __init__(self, service: str, message: str, status: Optional[str] = None):
        self.service = service
        self.status = status
        super().__init__(f"{service}: {message}")


class ResolutionCancelled(RentRouteError):
    """The enclosing request was cancelled while commutes were in flight."""
