"""
SQLite persistence for location-insight profiles.

No ORM, just raw sqlite3. One connection per call; any write that touches
more than one row runs inside a single BEGIN IMMEDIATE transaction so the
one-active-profile-per-property rule and profile/line-item ownership hold
even when two requests race.

Line items are deleted explicitly with their profile; there is no
ON DELETE CASCADE.
"""

import hashlib
import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("INSIGHTS_DB_PATH", "insights.db")


def _get_db():
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def _transaction():
    """Yield a connection inside BEGIN IMMEDIATE; commit on success, roll back on error."""
    conn = _get_db()
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except Exception:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def format_ts(dt: datetime) -> str:
    """UTC ISO-8601 with fixed microsecond width, so SQL string comparison is chronological."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return format_ts(datetime.now(timezone.utc))


def init_db():
    """Create tables if they don't exist. Safe to call on every startup."""
    conn = _get_db()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS realtors (
            realtor_id      TEXT PRIMARY KEY,
            name            TEXT,
            email           TEXT,
            api_token_hash  TEXT UNIQUE,
            is_admin        INTEGER NOT NULL DEFAULT 0,
            created_at      TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS properties (
            property_id     TEXT PRIMARY KEY,
            realtor_id      TEXT,
            mls_id          TEXT,
            address         TEXT,
            latitude        REAL,
            longitude       REAL,
            status          TEXT NOT NULL DEFAULT 'active',
            created_at      TEXT NOT NULL,
            updated_at      TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_properties_realtor ON properties(realtor_id);

        CREATE TABLE IF NOT EXISTS distance_profiles (
            profile_id        TEXT PRIMARY KEY,
            property_id       TEXT,
            realtor_id        TEXT,
            profile_name      TEXT,
            is_active         INTEGER NOT NULL DEFAULT 1,
            is_ad_hoc         INTEGER NOT NULL DEFAULT 0,
            ad_hoc_address    TEXT,
            ad_hoc_latitude   REAL,
            ad_hoc_longitude  REAL,
            categories_json   TEXT NOT NULL,
            distances_json    TEXT NOT NULL,
            metadata_json     TEXT,
            total_places      INTEGER NOT NULL DEFAULT 0,
            created_at        TEXT NOT NULL,
            updated_at        TEXT NOT NULL,
            CHECK (
                (is_ad_hoc = 1 AND property_id IS NULL
                    AND ad_hoc_latitude IS NOT NULL AND ad_hoc_longitude IS NOT NULL)
                OR (is_ad_hoc = 0 AND property_id IS NOT NULL
                    AND ad_hoc_latitude IS NULL AND ad_hoc_longitude IS NULL)
            )
        );
        CREATE INDEX IF NOT EXISTS idx_profiles_property ON distance_profiles(property_id, created_at);
        CREATE INDEX IF NOT EXISTS idx_profiles_adhoc ON distance_profiles(realtor_id, is_ad_hoc);
        CREATE INDEX IF NOT EXISTS idx_profiles_inactive ON distance_profiles(is_active, updated_at);
        -- At most one active profile per property, even under concurrent writers.
        CREATE UNIQUE INDEX IF NOT EXISTS idx_profiles_one_active
            ON distance_profiles(property_id)
            WHERE is_active = 1 AND property_id IS NOT NULL;

        CREATE TABLE IF NOT EXISTS profile_line_items (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            profile_id      TEXT NOT NULL REFERENCES distance_profiles(profile_id),
            category        TEXT NOT NULL,
            radius_meters   INTEGER NOT NULL,
            place_count     INTEGER NOT NULL DEFAULT 0,
            places_json     TEXT NOT NULL,
            searched_at     TEXT NOT NULL,
            UNIQUE (profile_id, category)
        );
    """)
    conn.commit()
    conn.close()


def generate_profile_id():
    """Short, URL-safe profile ID (12 chars)."""
    return uuid.uuid4().hex[:12]


# ---------------------------------------------------------------------------
# Realtors (auth lookups only; accounts are managed elsewhere)
# ---------------------------------------------------------------------------

def hash_token(token: str) -> str:
    """SHA-256 of an API bearer token. Only the hash is stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_realtor(name: str, email: str, api_token: str,
                   is_admin: bool = False, realtor_id: Optional[str] = None) -> str:
    realtor_id = realtor_id or uuid.uuid4().hex[:12]
    conn = _get_db()
    conn.execute(
        """INSERT INTO realtors (realtor_id, name, email, api_token_hash, is_admin, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (realtor_id, name, email, hash_token(api_token), 1 if is_admin else 0, _now_iso()),
    )
    conn.commit()
    conn.close()
    return realtor_id


def get_realtor_by_token(api_token: str) -> Optional[dict]:
    conn = _get_db()
    row = conn.execute(
        "SELECT realtor_id, name, email, is_admin FROM realtors WHERE api_token_hash = ?",
        (hash_token(api_token),),
    ).fetchone()
    conn.close()
    return dict(row) if row else None


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------

def create_property(realtor_id: Optional[str], address: Optional[str],
                    latitude: Optional[float], longitude: Optional[float],
                    mls_id: Optional[str] = None,
                    property_id: Optional[str] = None) -> str:
    property_id = property_id or uuid.uuid4().hex[:12]
    now = _now_iso()
    conn = _get_db()
    conn.execute(
        """INSERT INTO properties
           (property_id, realtor_id, mls_id, address, latitude, longitude, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (property_id, realtor_id, mls_id, address, latitude, longitude, now, now),
    )
    conn.commit()
    conn.close()
    return property_id


def get_property(property_id: str) -> Optional[dict]:
    conn = _get_db()
    row = conn.execute(
        "SELECT * FROM properties WHERE property_id = ?", (property_id,)
    ).fetchone()
    conn.close()
    return dict(row) if row else None


def update_property_coordinates(property_id: str, latitude: float, longitude: float) -> bool:
    conn = _get_db()
    cur = conn.execute(
        "UPDATE properties SET latitude = ?, longitude = ?, updated_at = ? WHERE property_id = ?",
        (latitude, longitude, _now_iso(), property_id),
    )
    changed = cur.rowcount
    conn.commit()
    conn.close()
    return changed > 0


def get_properties_missing_coordinates(limit: int = 100) -> List[dict]:
    """Active properties with an address but no latitude/longitude."""
    conn = _get_db()
    rows = conn.execute(
        """SELECT * FROM properties
           WHERE status = 'active' AND address IS NOT NULL AND address != ''
             AND (latitude IS NULL OR longitude IS NULL)
           ORDER BY created_at ASC LIMIT ?""",
        (limit,),
    ).fetchall()
    conn.close()
    return [dict(row) for row in rows]


# ---------------------------------------------------------------------------
# Distance profiles
# ---------------------------------------------------------------------------

def _profile_from_row(row) -> dict:
    data = dict(row)
    data["is_active"] = bool(data["is_active"])
    data["is_ad_hoc"] = bool(data["is_ad_hoc"])
    data["categories"] = json.loads(data.pop("categories_json") or "{}")
    data["distances"] = json.loads(data.pop("distances_json") or "{}")
    data["metadata"] = json.loads(data.pop("metadata_json") or "{}")
    return data


def _line_item_from_row(row) -> dict:
    data = dict(row)
    data["places"] = json.loads(data.pop("places_json"))
    data.pop("id", None)
    return data


def _insert_line_items(conn, profile_id: str, line_items: Iterable[dict]):
    for item in line_items:
        places = item.get("places") or []
        conn.execute(
            """INSERT INTO profile_line_items
               (profile_id, category, radius_meters, place_count, places_json, searched_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                profile_id,
                item["category"],
                int(item["radius_meters"]),
                len(places),
                json.dumps(places, sort_keys=True),
                item.get("searched_at") or _now_iso(),
            ),
        )


def _recount_places(conn, profile_id: str) -> int:
    row = conn.execute(
        "SELECT COALESCE(SUM(place_count), 0) AS total FROM profile_line_items WHERE profile_id = ?",
        (profile_id,),
    ).fetchone()
    return row["total"]


def insert_distance_profile(profile: dict, line_items: List[dict],
                            deactivate_existing: bool = False) -> str:
    """
    Persist a new profile with its line items. Returns the profile_id.

    With deactivate_existing, every active profile for the same property is
    set inactive in the same transaction before the insert. Raises
    sqlite3.IntegrityError if another active profile for the property
    slipped in anyway.
    """
    profile_id = profile.get("profile_id") or generate_profile_id()
    now = _now_iso()
    with _transaction() as conn:
        if deactivate_existing and profile.get("property_id"):
            cur = conn.execute(
                """UPDATE distance_profiles SET is_active = 0, updated_at = ?
                   WHERE property_id = ? AND is_active = 1""",
                (now, profile["property_id"]),
            )
            if cur.rowcount:
                logger.info(
                    "Deactivated %d profile(s) for property %s",
                    cur.rowcount, profile["property_id"],
                )
        conn.execute(
            """INSERT INTO distance_profiles
               (profile_id, property_id, realtor_id, profile_name, is_active, is_ad_hoc,
                ad_hoc_address, ad_hoc_latitude, ad_hoc_longitude,
                categories_json, distances_json, metadata_json, total_places,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)""",
            (
                profile_id,
                profile.get("property_id"),
                profile.get("realtor_id"),
                profile.get("profile_name"),
                1 if profile.get("is_ad_hoc") else 0,
                profile.get("ad_hoc_address"),
                profile.get("ad_hoc_latitude"),
                profile.get("ad_hoc_longitude"),
                json.dumps(profile.get("categories") or {}),
                json.dumps(profile.get("distances") or {}),
                json.dumps(profile.get("metadata") or {}),
                now,
                now,
            ),
        )
        _insert_line_items(conn, profile_id, line_items)
        conn.execute(
            "UPDATE distance_profiles SET total_places = ? WHERE profile_id = ?",
            (_recount_places(conn, profile_id), profile_id),
        )
    return profile_id


def rewrite_profile(profile_id: str, line_items: List[dict], categories: Dict[str, bool],
                    distances: Dict[str, int], metadata: dict,
                    replace_categories: Optional[Iterable[str]] = None) -> bool:
    """
    Replace line items and settings of an existing profile in place.

    replace_categories=None drops every existing line item first; otherwise
    only line items for the named categories are dropped, and all others are
    left untouched. Returns False if the profile no longer exists.
    """
    now = _now_iso()
    with _transaction() as conn:
        exists = conn.execute(
            "SELECT 1 FROM distance_profiles WHERE profile_id = ?", (profile_id,)
        ).fetchone()
        if not exists:
            return False
        if replace_categories is None:
            conn.execute("DELETE FROM profile_line_items WHERE profile_id = ?", (profile_id,))
        else:
            for category in replace_categories:
                conn.execute(
                    "DELETE FROM profile_line_items WHERE profile_id = ? AND category = ?",
                    (profile_id, category),
                )
        _insert_line_items(conn, profile_id, line_items)
        conn.execute(
            """UPDATE distance_profiles
               SET categories_json = ?, distances_json = ?, metadata_json = ?,
                   total_places = ?, updated_at = ?
               WHERE profile_id = ?""",
            (
                json.dumps(categories),
                json.dumps(distances),
                json.dumps(metadata),
                _recount_places(conn, profile_id),
                now,
                profile_id,
            ),
        )
    return True


def get_profile(profile_id: str) -> Optional[dict]:
    """Load a profile row by ID (JSON fields parsed), or None."""
    conn = _get_db()
    row = conn.execute(
        "SELECT * FROM distance_profiles WHERE profile_id = ?", (profile_id,)
    ).fetchone()
    conn.close()
    return _profile_from_row(row) if row else None


def get_active_profile(property_id: str) -> Optional[dict]:
    conn = _get_db()
    row = conn.execute(
        "SELECT * FROM distance_profiles WHERE property_id = ? AND is_active = 1",
        (property_id,),
    ).fetchone()
    conn.close()
    return _profile_from_row(row) if row else None


def list_profiles_for_property(property_id: str) -> List[dict]:
    """Every profile ever generated for a property, newest first."""
    conn = _get_db()
    rows = conn.execute(
        """SELECT * FROM distance_profiles WHERE property_id = ?
           ORDER BY created_at DESC, rowid DESC""",
        (property_id,),
    ).fetchall()
    conn.close()
    return [_profile_from_row(row) for row in rows]


def list_ad_hoc_profiles(realtor_id: str) -> List[dict]:
    conn = _get_db()
    rows = conn.execute(
        """SELECT * FROM distance_profiles WHERE is_ad_hoc = 1 AND realtor_id = ?
           ORDER BY created_at DESC, rowid DESC""",
        (realtor_id,),
    ).fetchall()
    conn.close()
    return [_profile_from_row(row) for row in rows]


def get_line_items(profile_id: str) -> List[dict]:
    conn = _get_db()
    rows = conn.execute(
        """SELECT * FROM profile_line_items WHERE profile_id = ?
           ORDER BY id ASC""",
        (profile_id,),
    ).fetchall()
    conn.close()
    return [_line_item_from_row(row) for row in rows]


def _delete_profiles(conn, profile_ids: List[str]) -> int:
    deleted = 0
    for profile_id in profile_ids:
        conn.execute("DELETE FROM profile_line_items WHERE profile_id = ?", (profile_id,))
        cur = conn.execute("DELETE FROM distance_profiles WHERE profile_id = ?", (profile_id,))
        deleted += cur.rowcount
    return deleted


def delete_profile(profile_id: str) -> bool:
    """Hard-delete a profile and its line items. Returns True if a row was removed."""
    with _transaction() as conn:
        return _delete_profiles(conn, [profile_id]) > 0


def delete_active_profile_for_property(property_id: str) -> bool:
    with _transaction() as conn:
        row = conn.execute(
            "SELECT profile_id FROM distance_profiles WHERE property_id = ? AND is_active = 1",
            (property_id,),
        ).fetchone()
        if not row:
            return False
        return _delete_profiles(conn, [row["profile_id"]]) > 0


def deactivate_stale_ad_hoc_profiles(cutoff_iso: str) -> int:
    """Mark active ad-hoc profiles not updated since cutoff as inactive. Returns count."""
    with _transaction() as conn:
        cur = conn.execute(
            """UPDATE distance_profiles SET is_active = 0, updated_at = ?
               WHERE is_ad_hoc = 1 AND is_active = 1 AND updated_at < ?""",
            (_now_iso(), cutoff_iso),
        )
        return cur.rowcount


def delete_inactive_profiles_before(cutoff_iso: str) -> int:
    """Hard-delete inactive profiles last updated before cutoff. Returns count."""
    with _transaction() as conn:
        rows = conn.execute(
            "SELECT profile_id FROM distance_profiles WHERE is_active = 0 AND updated_at < ?",
            (cutoff_iso,),
        ).fetchall()
        return _delete_profiles(conn, [row["profile_id"] for row in rows])


def get_profile_counts() -> dict:
    """Admin utility: profile counts by state."""
    conn = _get_db()
    row = conn.execute(
        """SELECT COUNT(*) AS total,
                  COALESCE(SUM(is_active), 0) AS active,
                  COALESCE(SUM(is_ad_hoc), 0) AS ad_hoc
           FROM distance_profiles"""
    ).fetchone()
    conn.close()
    return {"total": row["total"], "active": row["active"], "ad_hoc": row["ad_hoc"]}
