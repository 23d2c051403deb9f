"""
SQLite persistence for RentRoute.

Four tables:
  - commute_cache     one row per (listing, rounded destination, labels);
                      upserted, never deleted, freshness judged on read
  - commute_failures  per-key failure counter for retry backoff
  - listings          last-seen copy of every provider listing; doubles as
                      the fallback when the listing provider is down
  - search_history    one row per search

No ORM, just raw sqlite3. Cache helpers swallow storage errors so a broken
cache degrades to "miss" / "not written" and never fails a search.
"""

import sqlite3
import os
import uuid
import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from geo import Coordinate, bounding_box
from listings import Listing, ListingFilters

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("RENTROUTE_DB_PATH", "rentroute.db")

_KEY_COLUMNS = ("listing_id", "dest_lat", "dest_lng", "departure_time", "return_time")
_KEY_WHERE = " AND ".join(f"{c} = ?" for c in _KEY_COLUMNS)


def _get_db():
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db():
    """Create tables if they don't exist. Safe to call on every startup."""
    conn = _get_db()
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS commute_cache (
                listing_id       TEXT NOT NULL,
                dest_lat         TEXT NOT NULL,
                dest_lng         TEXT NOT NULL,
                departure_time   TEXT NOT NULL,
                return_time      TEXT NOT NULL,
                commute_to_min   INTEGER NOT NULL,
                commute_from_min INTEGER NOT NULL,
                avg_commute_min  INTEGER NOT NULL,
                created_at       TEXT NOT NULL,
                PRIMARY KEY (listing_id, dest_lat, dest_lng, departure_time, return_time)
            );

            CREATE TABLE IF NOT EXISTS commute_failures (
                listing_id     TEXT NOT NULL,
                dest_lat       TEXT NOT NULL,
                dest_lng       TEXT NOT NULL,
                departure_time TEXT NOT NULL,
                return_time    TEXT NOT NULL,
                failure_count  INTEGER NOT NULL DEFAULT 1,
                failed_at      TEXT NOT NULL,
                PRIMARY KEY (listing_id, dest_lat, dest_lng, departure_time, return_time)
            );

            CREATE TABLE IF NOT EXISTS listings (
                id            TEXT PRIMARY KEY,
                external_id   TEXT NOT NULL UNIQUE,
                address       TEXT NOT NULL,
                city          TEXT,
                state         TEXT,
                zip_code      TEXT,
                latitude      REAL NOT NULL,
                longitude     REAL NOT NULL,
                price         REAL NOT NULL,
                bedrooms      INTEGER NOT NULL,
                bathrooms     REAL NOT NULL,
                sqft          REAL,
                property_type TEXT NOT NULL,
                image_url     TEXT,
                listing_url   TEXT,
                fetched_at    TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_listings_lat ON listings(latitude);
            CREATE INDEX IF NOT EXISTS idx_listings_fetched ON listings(fetched_at);

            CREATE TABLE IF NOT EXISTS search_history (
                id                  INTEGER PRIMARY KEY AUTOINCREMENT,
                destination_address TEXT,
                destination_lat     REAL NOT NULL,
                destination_lng     REAL NOT NULL,
                radius_miles        REAL NOT NULL,
                result_count        INTEGER,
                created_at          TEXT NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Commute cache
# ---------------------------------------------------------------------------

def get_commute_cache(key: Sequence[str]) -> Optional[dict]:
    """Return the stored row for a 5-part commute key, or None.

    Freshness is not checked here; see commute_cache.CommuteCache.
    """
    try:
        conn = _get_db()
        try:
            row = conn.execute(
                f"""SELECT commute_to_min, commute_from_min, avg_commute_min, created_at
                    FROM commute_cache WHERE {_KEY_WHERE}""",
                tuple(key),
            ).fetchone()
        finally:
            conn.close()
        return dict(row) if row else None
    except sqlite3.Error:
        logger.warning("Commute cache lookup failed", exc_info=True)
        return None


def set_commute_cache(
    key: Sequence[str],
    commute_to_min: int,
    commute_from_min: int,
    avg_commute_min: int,
    created_at: Optional[str] = None,
) -> bool:
    """Upsert a commute result (last write wins). Returns False on storage error."""
    try:
        conn = _get_db()
        try:
            conn.execute(
                """INSERT OR REPLACE INTO commute_cache
                   (listing_id, dest_lat, dest_lng, departure_time, return_time,
                    commute_to_min, commute_from_min, avg_commute_min, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (*tuple(key), commute_to_min, commute_from_min, avg_commute_min,
                 created_at or _now_iso()),
            )
            conn.execute(f"DELETE FROM commute_failures WHERE {_KEY_WHERE}", tuple(key))
            conn.commit()
        finally:
            conn.close()
        return True
    except sqlite3.Error:
        logger.warning("Commute cache write failed", exc_info=True)
        return False


def get_commute_failure(key: Sequence[str]) -> Optional[dict]:
    try:
        conn = _get_db()
        try:
            row = conn.execute(
                f"SELECT failure_count, failed_at FROM commute_failures WHERE {_KEY_WHERE}",
                tuple(key),
            ).fetchone()
        finally:
            conn.close()
        return dict(row) if row else None
    except sqlite3.Error:
        logger.warning("Commute failure lookup failed", exc_info=True)
        return None


def record_commute_failure(key: Sequence[str], failed_at: Optional[str] = None) -> None:
    try:
        conn = _get_db()
        try:
            conn.execute(
                """INSERT INTO commute_failures
                   (listing_id, dest_lat, dest_lng, departure_time, return_time,
                    failure_count, failed_at)
                   VALUES (?, ?, ?, ?, ?, 1, ?)
                   ON CONFLICT (listing_id, dest_lat, dest_lng, departure_time, return_time)
                   DO UPDATE SET failure_count = failure_count + 1,
                                 failed_at = excluded.failed_at""",
                (*tuple(key), failed_at or _now_iso()),
            )
            conn.commit()
        finally:
            conn.close()
    except sqlite3.Error:
        logger.warning("Commute failure write failed", exc_info=True)


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

def _row_to_listing(row: sqlite3.Row) -> Listing:
    return Listing(
        id=row["id"],
        external_id=row["external_id"],
        address=row["address"],
        city=row["city"] or "",
        state=row["state"] or "",
        zip_code=row["zip_code"] or "",
        lat=row["latitude"],
        lng=row["longitude"],
        price=row["price"],
        bedrooms=row["bedrooms"],
        bathrooms=row["bathrooms"],
        sqft=row["sqft"],
        property_type=row["property_type"],
        image_url=row["image_url"],
        listing_url=row["listing_url"] or "",
        fetched_at=datetime.fromisoformat(row["fetched_at"]),
    )


def upsert_listing(listing: Listing) -> str:
    """Insert or refresh a listing by external_id. Returns its stable id.

    The id assigned on first insert is kept across refreshes so commute
    cache entries stay attached to the same listing.
    """
    fetched_at = _now_iso()
    conn = _get_db()
    try:
        conn.execute(
            """INSERT INTO listings
               (id, external_id, address, city, state, zip_code, latitude, longitude,
                price, bedrooms, bathrooms, sqft, property_type, image_url,
                listing_url, fetched_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (external_id) DO UPDATE SET
                   address = excluded.address,
                   city = excluded.city,
                   state = excluded.state,
                   zip_code = excluded.zip_code,
                   latitude = excluded.latitude,
                   longitude = excluded.longitude,
                   price = excluded.price,
                   bedrooms = excluded.bedrooms,
                   bathrooms = excluded.bathrooms,
                   sqft = excluded.sqft,
                   property_type = excluded.property_type,
                   image_url = excluded.image_url,
                   listing_url = excluded.listing_url,
                   fetched_at = excluded.fetched_at""",
            (
                uuid.uuid4().hex[:12], listing.external_id, listing.address,
                listing.city, listing.state, listing.zip_code, listing.lat, listing.lng,
                listing.price, listing.bedrooms, listing.bathrooms, listing.sqft,
                listing.property_type, listing.image_url, listing.listing_url, fetched_at,
            ),
        )
        row = conn.execute(
            "SELECT id FROM listings WHERE external_id = ?", (listing.external_id,)
        ).fetchone()
        conn.commit()
    finally:
        conn.close()
    listing.id = row["id"]
    listing.fetched_at = datetime.fromisoformat(fetched_at)
    return listing.id


def find_listings(
    center: Coordinate,
    radius_miles: float,
    filters: Optional[ListingFilters] = None,
    limit: int = 100,
) -> List[Listing]:
    """Stored listings inside the search box, newest first."""
    filters = filters or ListingFilters()
    south, north, west, east = bounding_box(center, radius_miles)
    clauses = ["latitude BETWEEN ? AND ?", "longitude BETWEEN ? AND ?"]
    params: list = [south, north, west, east]

    if filters.min_price is not None:
        clauses.append("price >= ?")
        params.append(filters.min_price)
    if filters.max_price is not None:
        clauses.append("price <= ?")
        params.append(filters.max_price)
    if filters.min_bedrooms is not None:
        clauses.append("bedrooms >= ?")
        params.append(filters.min_bedrooms)
    if filters.max_bedrooms is not None:
        clauses.append("bedrooms <= ?")
        params.append(filters.max_bedrooms)
    if filters.property_types:
        placeholders = ", ".join("?" for _ in filters.property_types)
        clauses.append(f"property_type IN ({placeholders})")
        params.extend(filters.property_types)

    params.append(limit)
    conn = _get_db()
    try:
        rows = conn.execute(
            f"""SELECT * FROM listings WHERE {' AND '.join(clauses)}
                ORDER BY fetched_at DESC LIMIT ?""",
            params,
        ).fetchall()
    finally:
        conn.close()
    return [_row_to_listing(r) for r in rows]


# ---------------------------------------------------------------------------
# Search history
# ---------------------------------------------------------------------------

def log_search(
    destination: Coordinate,
    radius_miles: float,
    result_count: int,
    destination_address: Optional[str] = None,
) -> None:
    """Record a search. Never raises."""
    try:
        conn = _get_db()
        try:
            conn.execute(
                """INSERT INTO search_history
                   (destination_address, destination_lat, destination_lng,
                    radius_miles, result_count, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    destination_address or destination.as_param(),
                    destination.lat, destination.lng, radius_miles,
                    result_count, _now_iso(),
                ),
            )
            conn.commit()
        finally:
            conn.close()
    except sqlite3.Error:
        logger.warning("Search history write failed", exc_info=True)

