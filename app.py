import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Optional

from flask import Flask, request, jsonify, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix

from app_config import AppConfig
from commute import CommuteResolutionEngine, DEFAULT_DEPARTURE, DEFAULT_RETURN, select_return_leg_strategy
from commute_cache import CommuteCache, CommuteKey
from departure_time import parse_time_label
from errors import ConfigurationError, InvalidInput, NotFound, ProviderUnavailable, ResolutionCancelled
from geo import validate_coordinate
from google_maps import GoogleMapsClient
from models import init_db
from rentcast import RentCastClient
from rr_trace import TraceContext, get_trace, set_trace, clear_trace
from search import parse_search_args, run_search

CONFIG = AppConfig.from_env()

# ---------------------------------------------------------------------------
# Sentry error tracking: gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
if CONFIG.sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration

    def _sentry_before_send(event, hint):
        """Provider outages and bad input are routine here; keep them as breadcrumbs."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            if exc_type is not None and issubclass(
                exc_type, (ProviderUnavailable, NotFound, InvalidInput)
            ):
                sentry_sdk.add_breadcrumb(
                    category=exc_type.__name__,
                    message=str(exc_value),
                    level="warning",
                )
                return None
        return event

    sentry_sdk.init(
        dsn=CONFIG.sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        before_send=_sentry_before_send,
    )

app = Flask(__name__)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: every search costs provider quota.  In-memory storage is
# per-process, so with N gunicorn workers the effective limit is ~N x nominal.
# ---------------------------------------------------------------------------
limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[CONFIG.rate_limit_default],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

if CONFIG.missing_keys():
    logger.warning(
        "Missing API keys: %s. Searches will fail (Google Maps) or use stored "
        "listings only (RentCast) until they are configured.",
        ", ".join(CONFIG.missing_keys()),
    )


# ---------------------------------------------------------------------------
# Services: built once from the process config
# ---------------------------------------------------------------------------

@dataclass
class Services:
    config: AppConfig
    maps: Optional[GoogleMapsClient]
    rentcast: Optional[RentCastClient]
    engine: Optional[CommuteResolutionEngine]


def build_services(config: AppConfig) -> Services:
    maps = None
    engine = None
    if config.google_maps_api_key:
        maps = GoogleMapsClient(config.google_maps_api_key, timeout=config.request_timeout)
        engine = CommuteResolutionEngine(
            maps,
            CommuteCache(ttl=config.cache_ttl, failure_backoff=config.failure_backoff),
            return_legs=select_return_leg_strategy(
                maps, config.return_leg_strategy, config.return_leg_max_workers
            ),
            tz=config.tz,
        )
    rentcast = None
    if config.rentcast_api_key:
        rentcast = RentCastClient(config.rentcast_api_key, timeout=config.request_timeout)
    return Services(config=config, maps=maps, rentcast=rentcast, engine=engine)


services = build_services(CONFIG)


def _require_maps():
    services.config.require("GOOGLE_MAPS_API_KEY")


# ---------------------------------------------------------------------------
# Request context: request ID + trace
# ---------------------------------------------------------------------------

@app.before_request
def _set_request_context():
    g.request_id = uuid.uuid4().hex[:10]
    set_trace(TraceContext(trace_id=g.request_id))


@app.teardown_request
def _teardown_request(exc):
    trace = get_trace()
    if trace and trace.api_calls:
        trace.log_summary()
    clear_trace()


def _error(message: str, status: int, **extra):
    body = {"error": message, "request_id": getattr(g, "request_id", "unknown")}
    body.update(extra)
    return jsonify(body), status


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

@app.route("/api/listings")
@limiter.limit(CONFIG.rate_limit_search)
def listings():
    """Listings near the destination with commute times and value scores."""
    params = parse_search_args(request.args)
    _require_maps()

    cancel = threading.Event()
    deadline = None
    if services.config.search_deadline_seconds > 0:
        deadline = threading.Timer(services.config.search_deadline_seconds, cancel.set)
        deadline.daemon = True
        deadline.start()
    try:
        result = run_search(params, services.rentcast, services.engine, cancel_event=cancel)
    finally:
        if deadline is not None:
            deadline.cancel()
    return jsonify({
        "listings": [s.to_dict() for s in result.listings],
        "total": len(result.listings),
        "usedStoredListings": result.used_stored_listings,
        "request_id": g.request_id,
    })


@app.route("/api/commute")
def commute():
    """Round-trip commute for one origin; cached when listingId is given."""
    args = request.args
    origin = validate_coordinate(args.get("originLat"), args.get("originLng"), prefix="origin")
    destination = validate_coordinate(args.get("destLat"), args.get("destLng"), prefix="dest")
    departure = args.get("departureTime") or DEFAULT_DEPARTURE
    return_time = args.get("returnTime") or DEFAULT_RETURN
    parse_time_label(departure, field="departureTime")
    parse_time_label(return_time, field="returnTime")
    listing_id = args.get("listingId") or None
    _require_maps()

    engine = services.engine
    if listing_id:
        cached = engine.lookup(listing_id, destination, departure, return_time)
        if cached is not None:
            return jsonify({**cached.to_dict(), "cached": True, "request_id": g.request_id})

    pair = engine.resolve_pair(origin, destination, departure, return_time)
    if listing_id:
        engine.cache.put(
            CommuteKey.build(listing_id, destination, departure, return_time), pair.result
        )
    return jsonify({
        **pair.result.to_dict(),
        "distanceToMiles": pair.distance_to_miles,
        "distanceFromMiles": pair.distance_from_miles,
        "cached": False,
        "request_id": g.request_id,
    })


@app.route("/api/geocode")
def geocode():
    """Forward (``address``) or reverse (``lat`` + ``lng``) geocoding."""
    address = (request.args.get("address") or "").strip()
    lat = request.args.get("lat")
    lng = request.args.get("lng")

    if address:
        _require_maps()
        found = services.maps.geocode(address)
        return jsonify({
            "address": found.formatted_address,
            "lat": found.coordinate.lat,
            "lng": found.coordinate.lng,
            "placeId": found.place_id,
        })

    if lat not in (None, "") and lng not in (None, ""):
        coordinate = validate_coordinate(lat, lng)
        _require_maps()
        formatted = services.maps.reverse_geocode(coordinate)
        return jsonify({"address": formatted, "lat": coordinate.lat, "lng": coordinate.lng})

    return _error("Either 'address' or 'lat' and 'lng' must be provided", 400)


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Liveness plus credential check; 503 while a provider key is missing."""
    missing = services.config.missing_keys()
    return jsonify({
        "status": "ok" if not missing else "degraded",
        "missing_keys": missing,
    }), 200 if not missing else 503


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(InvalidInput)
def invalid_input(e):
    return _error("Invalid query parameters", 400, field=e.field, details=[e.to_dict()])


@app.errorhandler(NotFound)
def not_found_error(e):
    return _error(str(e), 404)


@app.errorhandler(ProviderUnavailable)
def provider_unavailable(e):
    logger.warning("[%s] Provider unavailable: %s", getattr(g, "request_id", "-"), e)
    return _error(str(e), 502)


@app.errorhandler(ResolutionCancelled)
def resolution_cancelled(e):
    logger.warning("[%s] Search cancelled after %ss deadline",
                   getattr(g, "request_id", "-"), services.config.search_deadline_seconds)
    return _error("Search took too long. Please try again.", 504)


@app.errorhandler(ConfigurationError)
def configuration_error(e):
    logger.error("[%s] Missing required env vars: %s",
                 getattr(g, "request_id", "-"), e.missing_keys)
    return _error("Service is not configured", 503, missing_keys=e.missing_keys)


@app.errorhandler(429)
def rate_limit_exceeded(e):
    return _error("Too many requests. Please wait and try again.", 429)


@app.errorhandler(404)
def not_found(e):
    return _error("Not found", 404)


@app.errorhandler(500)
def internal_error(e):
    return _error("Internal server error", 500)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

init_db()

if __name__ == "__main__":
    import os
    app.run(
        host=os.environ.get("HOST", "127.0.0.1"),
        port=int(os.environ.get("PORT", 5002)),
        debug=os.environ.get("FLASK_DEBUG") == "1",
    )
