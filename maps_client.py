"""
Google Maps provider for location insights.

One client covers both upstream contracts the engine depends on:

  Geocoding:  geocode(address) -> (lat, lng) | None
              reverse_geocode(lat, lng) -> address | None
  Places:     search(lat, lng, category, radius_meters) -> [place, ...]
  Distance:   travel_times_batch(origin, destinations, mode) -> [minutes, ...]

"Not configured" and "no result" are reported differently: a missing key or
a REQUEST_DENIED response raises ProviderConfigError, while ZERO_RESULTS
returns None / []. Transport failures raise ProviderUnavailableError. No
retries happen here; callers decide whether a failure is fatal.
"""

import logging
import math
import os
import time
from typing import Dict, List, Optional, Tuple

import requests

from categories import CATEGORIES
from li_trace import get_trace

logger = logging.getLogger(__name__)


class ProviderUnavailableError(Exception):
    """Upstream provider unreachable, timed out, or returned a server-side error."""


class ProviderConfigError(ProviderUnavailableError):
    """Upstream provider is not usable with the current configuration (key missing or rejected)."""


# Google statuses that mean the key or request setup is wrong, not that the
# service is flaky.
_CONFIG_STATUSES = {"REQUEST_DENIED", "INVALID_REQUEST"}
_EMPTY_STATUSES = {"ZERO_RESULTS"}

EARTH_RADIUS_M = 6371000

# Distance Matrix modes reported per place, in report order.
TRAVEL_MODES = ("driving", "transit", "walking")


def haversine_meters(origin: Tuple[float, float], dest: Tuple[float, float]) -> int:
    """Great-circle distance in whole meters."""
    lat1, lon1 = math.radians(origin[0]), math.radians(origin[1])
    lat2, lon2 = math.radians(dest[0]), math.radians(dest[1])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return int(round(2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))))


class GoogleMapsClient:
    """Client for the Geocoding, Places Nearby Search and Distance Matrix web services."""

    DEFAULT_TIMEOUT = float(os.environ.get("GOOGLE_MAPS_TIMEOUT", "10"))

    def __init__(self, api_key: Optional[str], timeout: Optional[float] = None):
        self.api_key = api_key
        self.base_url = "https://maps.googleapis.com/maps/api"
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.session = requests.Session()
        self.session.trust_env = False

    @classmethod
    def from_env(cls) -> "GoogleMapsClient":
        return cls(os.environ.get("GOOGLE_MAPS_API_KEY"))

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _traced_get(self, endpoint_name: str, url: str, params: dict) -> dict:
        """GET with trace recording. Maps transport failures to ProviderUnavailableError."""
        if not self.api_key:
            raise ProviderConfigError("GOOGLE_MAPS_API_KEY is not configured")

        params = dict(params, key=self.api_key)
        t0 = time.time()
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise ProviderUnavailableError(
                f"Google Maps {endpoint_name} timed out after {self.timeout}s"
            ) from e
        except requests.exceptions.RequestException as e:
            raise ProviderUnavailableError(
                f"Google Maps {endpoint_name} request failed: {e}"
            ) from e
        elapsed_ms = int((time.time() - t0) * 1000)

        try:
            data = response.json()
        except ValueError:
            data = {}
        provider_status = data.get("status", "") if isinstance(data, dict) else ""

        trace = get_trace()
        if trace:
            trace.record_api_call(
                service="google_maps",
                endpoint=endpoint_name,
                elapsed_ms=elapsed_ms,
                status_code=response.status_code,
                provider_status=provider_status,
            )

        if response.status_code >= 500:
            raise ProviderUnavailableError(
                f"Google Maps {endpoint_name} returned HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            raise ProviderConfigError(
                f"Google Maps {endpoint_name} rejected the request (HTTP {response.status_code})"
            )
        if provider_status in _CONFIG_STATUSES:
            message = data.get("error_message") or provider_status
            raise ProviderConfigError(f"Google Maps {endpoint_name} failed: {message}")
        if provider_status != "OK" and provider_status not in _EMPTY_STATUSES:
            raise ProviderUnavailableError(
                f"Google Maps {endpoint_name} failed: {provider_status or 'malformed response'}"
            )
        return data

    # ------------------------------------------------------------------
    # Geocoding
    # ------------------------------------------------------------------

    def geocode(self, address: str) -> Optional[Tuple[float, float]]:
        """Address to (lat, lng); None when Google finds nothing."""
        data = self._traced_get("geocode", f"{self.base_url}/geocode/json", {"address": address})
        results = data.get("results") or []
        if not results:
            return None
        location = results[0]["geometry"]["location"]
        return location["lat"], location["lng"]

    def reverse_geocode(self, lat: float, lng: float) -> Optional[str]:
        """(lat, lng) to a formatted address; None when Google finds nothing."""
        data = self._traced_get(
            "reverse_geocode", f"{self.base_url}/geocode/json", {"latlng": f"{lat},{lng}"}
        )
        results = data.get("results") or []
        if not results:
            return None
        return results[0].get("formatted_address")

    # ------------------------------------------------------------------
    # Places
    # ------------------------------------------------------------------

    def places_nearby(self, lat: float, lng: float, place_type: str,
                      radius_meters: int, keyword: Optional[str] = None) -> List[Dict]:
        """Raw Nearby Search results for one place type."""
        params = {
            "location": f"{lat},{lng}",
            "radius": int(radius_meters),
            "type": place_type,
        }
        if keyword:
            params["keyword"] = keyword
        data = self._traced_get("places_nearby", f"{self.base_url}/place/nearbysearch/json", params)
        return data.get("results", [])

    def search(self, lat: float, lng: float, category: str, radius_meters: int) -> List[Dict]:
        """Places in *category* within *radius_meters*, nearest first.

        Nearby Search accepts a single `type`, so each of the category's
        place types is searched separately and the results merged. Google
        ranks by prominence and treats radius as a bias, so distances are
        computed here and anything outside the radius is dropped.
        """
        config = CATEGORIES[category]
        raw = []
        for place_type in config.place_types:
            raw.extend(self.places_nearby(
                lat, lng, place_type, radius_meters, keyword=config.keyword
            ))
        return normalize_places((lat, lng), raw, radius_meters, config.limit)

    # ------------------------------------------------------------------
    # Distance Matrix
    # ------------------------------------------------------------------

    # Google Distance Matrix allows up to 25 destinations per request.
    DISTANCE_MATRIX_MAX_DESTINATIONS = 25

    def travel_times_batch(
        self,
        origin: Tuple[float, float],
        destinations: List[Tuple[float, float]],
        mode: str,
    ) -> List[Optional[int]]:
        """
        Travel times in minutes from one origin to many destinations.
        Batches into requests of up to 25 destinations per call (API limit).
        Returns one value per destination; None where the route is unreachable.
        """
        if mode not in TRAVEL_MODES:
            raise ValueError(f"Unsupported travel mode: {mode!r}")
        if not destinations:
            return []
        results: List[Optional[int]] = []
        for i in range(0, len(destinations), self.DISTANCE_MATRIX_MAX_DESTINATIONS):
            chunk = destinations[i : i + self.DISTANCE_MATRIX_MAX_DESTINATIONS]
            params = {
                "origins": f"{origin[0]},{origin[1]}",
                "destinations": "|".join(f"{d[0]},{d[1]}" for d in chunk),
                "mode": mode,
            }
            data = self._traced_get(
                f"{mode}_times_batch", f"{self.base_url}/distancematrix/json", params
            )
            rows = data.get("rows") or [{}]
            elements = rows[0].get("elements") or []
            for j in range(len(chunk)):
                elem = elements[j] if j < len(elements) else {}
                if elem.get("status") != "OK" or "duration" not in elem:
                    results.append(None)
                else:
                    results.append(elem["duration"]["value"] // 60)
        return results


def normalize_places(origin: Tuple[float, float], raw: List[Dict],
                     radius_meters: int, limit: int) -> List[Dict]:
    """Flatten Nearby Search results into place dicts within radius, nearest first."""
    seen = set()
    places = []
    for item in raw:
        location = (item.get("geometry") or {}).get("location") or {}
        if "lat" not in location or "lng" not in location:
            continue
        key = item.get("place_id") or (item.get("name"), location["lat"], location["lng"])
        if key in seen:
            continue
        seen.add(key)
        distance = haversine_meters(origin, (location["lat"], location["lng"]))
        if distance > radius_meters:
            continue
        places.append({
            "place_id": item.get("place_id"),
            "name": item.get("name") or "Unknown Place",
            "address": item.get("formatted_address") or item.get("vicinity"),
            "lat": location["lat"],
            "lng": location["lng"],
            "distance_meters": distance,
            "rating": item.get("rating"),
            "types": item.get("types", []),
        })
    places.sort(key=lambda p: (p["distance_meters"], p["name"]))
    return places[:limit]
