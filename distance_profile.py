"""
Distance profile engine: location insights for a property or an ad-hoc point.

A profile is a set of per-category amenity searches ("line items") around
one coordinate, each bounded by its own radius. The engine owns the
lifecycle:

  generate  -> new active profile (previous active one for the property is
               deactivated in the same transaction)
  refresh   -> the active profile is re-aggregated in place
  update    -> radii merged; only changed categories are searched again
  delete    -> hard delete, idempotent
  cleanup   -> stale ad-hoc profiles deactivated, old inactive ones deleted

Providers are injected; the engine keeps no process-wide state.

Category searches fan out over a thread pool. A category whose provider call
fails is skipped and listed in metadata["failed_categories"]; a provider
misconfiguration, or every category failing, aborts the operation and
nothing is written.

When a travel-time provider is wired in, every place found also gets driving,
transit and walking minutes from the Distance Matrix. Travel times are
best-effort: a failed mode leaves those minutes as None and is listed in
metadata["travel_time_failures"].
"""

import logging
import math
import os
import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import models
from categories import (
    MAX_RADIUS_M,
    default_category_map,
    default_radius,
    enabled_categories,
    resolve_category,
)
from li_trace import get_trace, set_trace, timed_stage
from maps_client import TRAVEL_MODES, ProviderConfigError, ProviderUnavailableError

logger = logging.getLogger(__name__)

PROFILE_RETENTION_DAYS = int(os.environ.get("PROFILE_RETENTION_DAYS", "30"))
ADHOC_STALE_DAYS = int(os.environ.get("ADHOC_STALE_DAYS", "90"))
CATEGORY_SEARCH_WORKERS = int(os.environ.get("CATEGORY_SEARCH_WORKERS", "8"))
PROFILE_TRAVEL_MODES = tuple(
    m.strip() for m in os.environ.get("PROFILE_TRAVEL_MODES", ",".join(TRAVEL_MODES)).split(",")
    if m.strip() in TRAVEL_MODES
)

DEFAULT_PROFILE_NAME = "Location Insights"


# =============================================================================
# Errors
# =============================================================================

class DistanceProfileError(Exception):
    """Base class for errors the API layer maps to 4xx responses."""


class ValidationError(DistanceProfileError):
    """Missing or invalid input."""


class MissingCoordinatesError(ValidationError):
    """The profile's location has no latitude/longitude."""


class NotFoundError(DistanceProfileError):
    pass


class PropertyNotFoundError(NotFoundError):
    pass


class ProfileNotFoundError(NotFoundError):
    pass


class UnauthorizedError(DistanceProfileError):
    """Caller is not authenticated."""


class ForbiddenError(UnauthorizedError):
    """Caller is authenticated but does not own the resource."""


class ConflictError(DistanceProfileError):
    """A concurrent write won the race for the property's active profile."""


# =============================================================================
# Request / result types
# =============================================================================

@dataclass
class GenerateRequest:
    """Inputs for generate_distance_profile. Either property_id or the ad-hoc fields."""
    property_id: Optional[str] = None
    realtor_id: Optional[str] = None
    is_ad_hoc: bool = False
    ad_hoc_address: Optional[str] = None
    ad_hoc_latitude: Optional[float] = None
    ad_hoc_longitude: Optional[float] = None
    categories: Optional[Dict[str, bool]] = None
    distances: Optional[Dict[str, int]] = None
    profile_name: Optional[str] = None
    refresh: bool = False


@dataclass
class CleanupResult:
    deleted: int = 0
    deactivated: int = 0

    def to_dict(self) -> dict:
        return {"deleted": self.deleted, "deactivated": self.deactivated}


@dataclass
class _Aggregation:
    line_items: List[dict] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    travel_failed: Dict[str, Dict[str, str]] = field(default_factory=dict)


# =============================================================================
# Helpers
# =============================================================================

def build_profile_name(profile_name: Optional[str], now: Optional[datetime] = None) -> str:
    """'<name> - Mon D, YYYY HH:MM', falling back to the default name."""
    now = now or datetime.now(timezone.utc)
    stamp = f"{now.strftime('%b')} {now.day}, {now.year} {now.strftime('%H:%M')}"
    clean = profile_name.strip() if isinstance(profile_name, str) else ""
    if not clean or "invalid" in clean.lower():
        clean = DEFAULT_PROFILE_NAME
    return f"{clean} - {stamp}"


def _canonical_map(values: Optional[dict], what: str) -> Dict[str, object]:
    result = {}
    for name, value in (values or {}).items():
        canonical = resolve_category(name)
        if canonical is None:
            raise ValidationError(f"Unknown category in {what}: {name!r}")
        result[canonical] = value
    return result


def _checked_radii(distances: Dict[str, object]) -> Dict[str, int]:
    """Whole meters, range-checked after rounding."""
    result = {}
    for name, radius in distances.items():
        if isinstance(radius, bool) or not isinstance(radius, (int, float)) \
                or not math.isfinite(radius):
            raise ValidationError(f"Radius for {name} must be a number of meters")
        meters = int(round(radius))
        if not 0 < meters <= MAX_RADIUS_M:
            raise ValidationError(f"Radius for {name} must be in (0, {MAX_RADIUS_M}] meters")
        result[name] = meters
    return result


def _resolve_settings(categories: Optional[dict], distances: Optional[dict],
                      inherited: Optional[Dict[str, int]] = None,
                      ) -> Tuple[Dict[str, bool], Dict[str, int]]:
    """
    Canonical category flags plus a radius for exactly the enabled categories.

    A requested radius for a category that is not enabled is rejected, since
    it would be stored but never searched. Enabled categories without a
    requested radius take the inherited one, then the category default.
    """
    cats = _canonical_map(categories, "categories") if categories else default_category_map()
    dists = _checked_radii(_canonical_map(distances, "distances"))
    enabled = enabled_categories(cats)
    stray = sorted(set(dists) - set(enabled))
    if stray:
        raise ValidationError(
            f"Radius given for categories that are not enabled: {', '.join(stray)}"
        )
    inherited = inherited or {}
    for name in enabled:
        if name not in dists:
            dists[name] = inherited.get(name) or default_radius(name)
    return cats, dists


def _average_travel_times(places: List[dict]) -> Dict[str, Optional[float]]:
    """Mean minutes per travel mode over places with a reachable route."""
    averages = {}
    for mode in TRAVEL_MODES:
        minutes = [
            p["travel_times"][mode] for p in places
            if mode in (p.get("travel_times") or {})
        ]
        if not minutes:
            continue
        reachable = [m for m in minutes if m is not None]
        averages[mode] = round(sum(reachable) / len(reachable), 1) if reachable else None
    return averages


def _summary_for(profile: dict) -> dict:
    return {
        "id": profile["profile_id"],
        "profile_name": profile["profile_name"],
        "property_id": profile["property_id"],
        "is_active": profile["is_active"],
        "is_ad_hoc": profile["is_ad_hoc"],
        "address": profile["ad_hoc_address"],
        "latitude": profile["ad_hoc_latitude"],
        "longitude": profile["ad_hoc_longitude"],
        "created_at": profile["created_at"],
        "updated_at": profile["updated_at"],
        "total_places": profile["total_places"],
        "categories": profile["categories"],
        "distances": profile["distances"],
    }


# =============================================================================
# Engine
# =============================================================================

class DistanceProfileEngine:
    """Generates, reads, updates and retires distance profiles."""

    def __init__(self, places, geocoder=None, travel=None,
                 travel_modes: Tuple[str, ...] = PROFILE_TRAVEL_MODES,
                 max_workers: int = CATEGORY_SEARCH_WORKERS):
        self.places = places
        self.geocoder = geocoder
        self.travel = travel
        self.travel_modes = tuple(travel_modes)
        self.max_workers = max(1, max_workers)

    # ------------------------------------------------------------------
    # Coordinates
    # ------------------------------------------------------------------

    def _property_coordinates(self, property_id: str) -> Tuple[float, float]:
        prop = models.get_property(property_id)
        if not prop:
            raise PropertyNotFoundError(f"Property {property_id} not found")
        if prop["latitude"] is None or prop["longitude"] is None:
            raise MissingCoordinatesError(
                "Property coordinates are required for distance profile generation"
            )
        return prop["latitude"], prop["longitude"]

    def _profile_coordinates(self, profile: dict) -> Tuple[float, float]:
        if profile["is_ad_hoc"]:
            return profile["ad_hoc_latitude"], profile["ad_hoc_longitude"]
        return self._property_coordinates(profile["property_id"])

    def _coordinates_or_none(self, profile: dict) -> Optional[Dict[str, float]]:
        try:
            lat, lng = self._profile_coordinates(profile)
        except (NotFoundError, MissingCoordinatesError):
            return None
        return {"lat": lat, "lng": lng}

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def _search_category(self, lat: float, lng: float, category: str, radius: int) -> dict:
        places = self.places.search(lat, lng, category, radius)
        item = {
            "category": category,
            "radius_meters": radius,
            "places": places,
            "searched_at": models.format_ts(datetime.now(timezone.utc)),
        }
        if self.travel is not None and self.travel_modes and places:
            item["travel_errors"] = self._attach_travel_times(lat, lng, category, places)
        return item

    def _attach_travel_times(self, lat: float, lng: float, category: str,
                             places: List[dict]) -> Dict[str, str]:
        """Set place["travel_times"] per mode; returns {mode: error} for failed modes."""
        destinations = [(p["lat"], p["lng"]) for p in places]
        errors = {}
        for place in places:
            place["travel_times"] = {}
        for mode in self.travel_modes:
            try:
                minutes = timed_stage(
                    f"travel:{category}:{mode}", self.travel.travel_times_batch,
                    (lat, lng), destinations, mode,
                )
            except ProviderUnavailableError as e:
                logger.warning("Travel times (%s) failed for %s: %s", mode, category, e)
                errors[mode] = str(e)
                minutes = [None] * len(places)
            for place, value in zip(places, minutes):
                place["travel_times"][mode] = value
        return errors

    def _aggregate(self, lat: float, lng: float, categories: List[str],
                   distances: Dict[str, int], require_any: bool = True) -> _Aggregation:
        """Search every category concurrently and join before returning.

        A ProviderConfigError from any category aborts. With require_any, so
        does every category failing.
        """
        agg = _Aggregation()
        if not categories:
            return agg

        parent_trace = get_trace()

        def _task(category):
            set_trace(parent_trace)
            return timed_stage(
                f"search:{category}", self._search_category,
                lat, lng, category, distances[category],
            )

        workers = min(self.max_workers, len(categories))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [(c, pool.submit(_task, c)) for c in categories]
            results = {}
            config_error = None
            for category, future in futures:
                try:
                    results[category] = future.result()
                except ProviderConfigError as e:
                    config_error = config_error or e
                except ProviderUnavailableError as e:
                    logger.warning("Category search failed for %s: %s", category, e)
                    agg.failed[category] = str(e)

        if config_error is not None:
            raise config_error
        if require_any and not results:
            raise ProviderUnavailableError(
                "Places provider unavailable: every category search failed"
            )
        # Preserve request order so reports are stable.
        agg.line_items = [results[c] for c in categories if c in results]
        for item in agg.line_items:
            travel_errors = item.pop("travel_errors", None)
            if travel_errors:
                agg.travel_failed[item["category"]] = travel_errors
        return agg

    def _lookup_address(self, lat: float, lng: float) -> Tuple[Optional[str], str]:
        """Best-effort reverse geocode for ad-hoc labels. Returns (address, status)."""
        if self.geocoder is None:
            return None, "skipped"
        try:
            address = timed_stage("reverse_geocode", self.geocoder.reverse_geocode, lat, lng)
        except ProviderUnavailableError as e:
            logger.warning("Reverse geocode failed for %s,%s: %s", lat, lng, e)
            return None, f"failed: {e}"
        return address, "ok" if address else "no_result"

    # ------------------------------------------------------------------
    # Generate
    # ------------------------------------------------------------------

    def generate_distance_profile(self, req: GenerateRequest) -> dict:
        """Create (or refresh in place) a profile and return its report."""
        if req.is_ad_hoc:
            if req.property_id:
                raise ValidationError("Ad-hoc profiles cannot be bound to a property")
            if req.ad_hoc_latitude is None or req.ad_hoc_longitude is None:
                raise MissingCoordinatesError("Ad-hoc coordinates are required")
            lat, lng = req.ad_hoc_latitude, req.ad_hoc_longitude
        else:
            if not req.property_id:
                raise ValidationError("property_id is required for property-bound profiles")
            lat, lng = self._property_coordinates(req.property_id)

        current = None
        if not req.is_ad_hoc and req.refresh:
            current = models.get_active_profile(req.property_id)

        if current:
            # Refresh without new settings re-runs the profile as it stands.
            categories, distances = _resolve_settings(
                req.categories if req.categories is not None else current["categories"],
                req.distances,
                inherited=current["distances"],
            )
        else:
            categories, distances = _resolve_settings(req.categories, req.distances)
        enabled = enabled_categories(categories)
        if not enabled:
            raise ValidationError("At least one category must be enabled")

        if current:
            return self._refresh_in_place(current, lat, lng, categories, distances, enabled)

        agg = self._aggregate(lat, lng, enabled, distances)
        now = datetime.now(timezone.utc)
        metadata = {
            "generated_at": models.format_ts(now),
            "failed_categories": agg.failed,
            "travel_time_failures": agg.travel_failed,
        }

        address = req.ad_hoc_address
        if req.is_ad_hoc and not address:
            address, metadata["address_lookup"] = self._lookup_address(lat, lng)

        profile = {
            "property_id": None if req.is_ad_hoc else req.property_id,
            "realtor_id": req.realtor_id,
            "profile_name": build_profile_name(req.profile_name, now),
            "is_ad_hoc": req.is_ad_hoc,
            "ad_hoc_address": address if req.is_ad_hoc else None,
            "ad_hoc_latitude": lat if req.is_ad_hoc else None,
            "ad_hoc_longitude": lng if req.is_ad_hoc else None,
            "categories": categories,
            "distances": distances,
            "metadata": metadata,
        }
        try:
            profile_id = models.insert_distance_profile(
                profile, agg.line_items, deactivate_existing=not req.is_ad_hoc,
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError(
                "Another distance profile for this property was generated concurrently"
            ) from e

        logger.info(
            "Generated distance profile %s (%s) categories=%d failed=%d",
            profile_id,
            "ad-hoc" if req.is_ad_hoc else f"property {req.property_id}",
            len(agg.line_items),
            len(agg.failed),
        )
        return self.get_distance_profile_by_id(profile_id)

    def _refresh_in_place(self, current: dict, lat: float, lng: float,
                          categories: Dict[str, bool], distances: Dict[str, int],
                          enabled: List[str]) -> dict:
        agg = self._aggregate(lat, lng, enabled, distances)

        # A failed category keeps its previous line item and radius; only
        # searched and disabled categories are replaced.
        existing = [item["category"] for item in models.get_line_items(current["profile_id"])]
        for name in agg.failed:
            if name in existing and name in current["distances"]:
                distances[name] = current["distances"][name]
        replaced = [item["category"] for item in agg.line_items]
        replaced += [name for name in existing if name not in enabled]

        metadata = dict(current["metadata"])
        metadata["refreshed_at"] = models.format_ts(datetime.now(timezone.utc))
        metadata["failed_categories"] = agg.failed
        travel_failed = dict(metadata.get("travel_time_failures") or {})
        for name in replaced:
            travel_failed.pop(name, None)
        travel_failed.update(agg.travel_failed)
        metadata["travel_time_failures"] = travel_failed
        if not models.rewrite_profile(current["profile_id"], agg.line_items,
                                      categories, distances, metadata,
                                      replace_categories=replaced):
            raise ProfileNotFoundError(f"Distance profile {current['profile_id']} not found")
        logger.info(
            "Refreshed distance profile %s in place: searched=%d failed=%s",
            current["profile_id"], len(agg.line_items), sorted(agg.failed),
        )
        return self.get_distance_profile_by_id(current["profile_id"])

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def _report(self, profile: dict) -> dict:
        line_items = models.get_line_items(profile["profile_id"])
        for item in line_items:
            item["average_travel_times"] = _average_travel_times(item["places"])
        by_category = {item["category"]: item for item in line_items}

        summary = {
            "total_places": sum(item["place_count"] for item in line_items),
            "categories_searched": len(line_items),
            "nearest": {
                item["category"]: item["places"][0]["distance_meters"]
                for item in line_items if item["places"]
            },
            "average_travel_times": _average_travel_times(
                [place for item in line_items for place in item["places"]]
            ),
        }
        for item in line_items:
            summary[item["category"]] = item["place_count"]

        return {
            "profile": {
                "id": profile["profile_id"],
                "property_id": profile["property_id"],
                "realtor_id": profile["realtor_id"],
                "profile_name": profile["profile_name"],
                "is_active": profile["is_active"],
                "is_ad_hoc": profile["is_ad_hoc"],
                "ad_hoc_address": profile["ad_hoc_address"],
                "ad_hoc_latitude": profile["ad_hoc_latitude"],
                "ad_hoc_longitude": profile["ad_hoc_longitude"],
                "categories": profile["categories"],
                "distances": profile["distances"],
                "created_at": profile["created_at"],
                "updated_at": profile["updated_at"],
            },
            "coordinates": self._coordinates_or_none(profile),
            "line_items": by_category,
            "summary": summary,
            "metadata": profile["metadata"],
        }

    def get_distance_profile(self, property_id: str) -> Optional[dict]:
        """Report for the property's active profile, or None."""
        profile = models.get_active_profile(property_id)
        return self._report(profile) if profile else None

    def get_distance_profile_by_id(self, profile_id: str) -> Optional[dict]:
        profile = models.get_profile(profile_id)
        return self._report(profile) if profile else None

    def get_all_distance_profiles(self, property_id: str) -> List[dict]:
        """Summaries of every profile for the property, newest first."""
        return [_summary_for(p) for p in models.list_profiles_for_property(property_id)]

    def get_ad_hoc_profiles(self, realtor_id: str) -> List[dict]:
        return [_summary_for(p) for p in models.list_ad_hoc_profiles(realtor_id)]

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update_distance_profile_radius(self, profile_id: str, distances: Dict[str, int],
                                       refresh: bool = False) -> dict:
        """Merge new radii; re-search only categories whose radius changed (or all named, on refresh)."""
        profile = models.get_profile(profile_id)
        if not profile:
            raise ProfileNotFoundError(f"Distance profile {profile_id} not found")

        updates = _checked_radii(_canonical_map(distances, "distances"))

        merged_distances = dict(profile["distances"])
        merged_categories = dict(profile["categories"])
        affected = []
        for name, radius in updates.items():
            changed = merged_distances.get(name) != radius
            newly_enabled = merged_categories.get(name) is False or name not in merged_categories
            merged_distances[name] = radius
            merged_categories[name] = True
            if refresh or changed or newly_enabled:
                affected.append(name)

        metadata = dict(profile["metadata"])
        if not affected:
            models.rewrite_profile(profile_id, [], merged_categories, merged_distances,
                                   metadata, replace_categories=[])
            return self.get_distance_profile_by_id(profile_id)

        lat, lng = self._profile_coordinates(profile)
        agg = self._aggregate(lat, lng, affected, merged_distances, require_any=False)

        # A failed category keeps its previous line item and radius.
        previous_failed = dict(metadata.get("failed_categories") or {})
        for name in affected:
            previous_failed.pop(name, None)
        for name, error in agg.failed.items():
            previous_failed[name] = error
            if name in profile["distances"]:
                merged_distances[name] = profile["distances"][name]
        metadata["failed_categories"] = previous_failed
        metadata["radius_updated_at"] = models.format_ts(datetime.now(timezone.utc))

        replaced = [item["category"] for item in agg.line_items]
        travel_failed = dict(metadata.get("travel_time_failures") or {})
        for name in replaced:
            travel_failed.pop(name, None)
        travel_failed.update(agg.travel_failed)
        metadata["travel_time_failures"] = travel_failed
        if not models.rewrite_profile(profile_id, agg.line_items, merged_categories,
                                      merged_distances, metadata,
                                      replace_categories=replaced):
            raise ProfileNotFoundError(f"Distance profile {profile_id} not found")
        logger.info(
            "Updated radius for profile %s: searched=%s failed=%s",
            profile_id, replaced, sorted(agg.failed),
        )
        return self.get_distance_profile_by_id(profile_id)

    # ------------------------------------------------------------------
    # Delete / cleanup
    # ------------------------------------------------------------------

    def delete_distance_profile(self, property_id: str) -> bool:
        """Delete the property's active profile. Missing profile is not an error."""
        deleted = models.delete_active_profile_for_property(property_id)
        if deleted:
            logger.info("Deleted active distance profile for property %s", property_id)
        return deleted

    def delete_distance_profile_by_id(self, profile_id: str) -> bool:
        deleted = models.delete_profile(profile_id)
        if deleted:
            logger.info("Deleted distance profile %s", profile_id)
        return deleted

    def cleanup_old_deactivated_profiles(self, retention_days: Optional[int] = None,
                                         now: Optional[datetime] = None,
                                         adhoc_stale_days: Optional[int] = None) -> CleanupResult:
        """
        Retire stale ad-hoc profiles and delete old inactive ones.

        Active profiles are never deleted. Ad-hoc profiles past the staleness
        window are only deactivated here; they are deleted by a later run
        once they have also aged past the retention window.
        """
        now = now or datetime.now(timezone.utc)
        retention = PROFILE_RETENTION_DAYS if retention_days is None else retention_days
        stale = ADHOC_STALE_DAYS if adhoc_stale_days is None else adhoc_stale_days

        t0 = time.time()
        deleted = models.delete_inactive_profiles_before(
            models.format_ts(now - timedelta(days=retention))
        )
        deactivated = models.deactivate_stale_ad_hoc_profiles(
            models.format_ts(now - timedelta(days=stale))
        )
        result = CleanupResult(deleted=deleted, deactivated=deactivated)
        logger.info(
            "Profile cleanup: deleted=%d deactivated_adhoc=%d retention=%dd (%.2fs)",
            deleted, deactivated, retention, time.time() - t0,
        )
        return result
