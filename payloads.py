"""
Request body parsing for the location-insights API.

Each route parses its JSON body into one of the dataclasses below before
anything reaches the engine. Malformed input raises ValidationError with a
message that is safe to show to the caller.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from categories import (
    MAX_RADIUS_M,
    PROFILE_TEMPLATES,
    categories_from_questionnaire,
    default_radius,
    resolve_category,
)
from distance_profile import MissingCoordinatesError, ValidationError


@dataclass
class PropertyProfileRequest:
    refresh: bool = False
    categories: Optional[Dict[str, bool]] = None
    distances: Optional[Dict[str, int]] = None
    profile_name: Optional[str] = None
    template: Optional[str] = None


@dataclass
class AdHocProfileRequest:
    latitude: float
    longitude: float
    address: Optional[str] = None
    categories: Optional[Dict[str, bool]] = None
    distances: Optional[Dict[str, int]] = None
    profile_name: Optional[str] = None
    template: Optional[str] = None


@dataclass
class RadiusUpdateRequest:
    distances: Dict[str, int] = field(default_factory=dict)
    refresh: bool = False


@dataclass
class PersonalizedProfileRequest:
    categories: List[str] = field(default_factory=list)
    distances: Optional[Dict[str, int]] = None
    profile_name: Optional[str] = None

    @property
    def category_map(self) -> Dict[str, bool]:
        return {name: True for name in self.categories}


# =============================================================================
# Field helpers
# =============================================================================

def _require_object(body, what: str = "Request body") -> dict:
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError(f"{what} must be a JSON object")
    return body


def _bool_field(body: dict, key: str, default: bool = False) -> bool:
    value = body.get(key, default)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be true or false")
    return value


def _str_field(body: dict, key: str) -> Optional[str]:
    value = body.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    value = value.strip()
    return value or None


def _number(value, key: str) -> float:
    # bool is an int subclass; true/false are not coordinates or radii.
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"{key} must be a number")
    return value


def _coordinate(body: dict, key: str, limit: float) -> Optional[float]:
    value = body.get(key)
    if value is None:
        return None
    value = float(_number(value, key))
    if not -limit <= value <= limit:
        raise ValidationError(f"{key} must be between -{limit:g} and {limit:g}")
    return value


def _category(name, where: str) -> str:
    canonical = resolve_category(name)
    if canonical is None:
        raise ValidationError(f"Unknown category in {where}: {name!r}")
    return canonical


def parse_categories(value) -> Optional[Dict[str, bool]]:
    """{name: bool} or a list of names; canonical names out."""
    if value is None:
        return None
    if isinstance(value, list):
        return {_category(name, "categories"): True for name in value}
    if not isinstance(value, dict):
        raise ValidationError("categories must be an object or a list")
    result = {}
    for name, flag in value.items():
        if not isinstance(flag, bool):
            raise ValidationError(f"categories.{name} must be true or false")
        result[_category(name, "categories")] = flag
    return result


def parse_distances(value) -> Optional[Dict[str, int]]:
    """{name: meters}, each radius rounded to whole meters in (0, MAX_RADIUS_M]."""
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValidationError("distances must be an object")
    result = {}
    for name, radius in value.items():
        meters = int(round(_number(radius, f"distances.{name}")))
        if meters <= 0 or meters > MAX_RADIUS_M:
            raise ValidationError(
                f"distances.{name} must be at least 1 and at most {MAX_RADIUS_M} meters"
            )
        result[_category(name, "distances")] = meters
    return result


def _apply_template(template_id: Optional[str], categories, distances):
    """Seed categories/distances from a template; explicit values win."""
    if template_id is None:
        return categories, distances
    template = PROFILE_TEMPLATES.get(template_id)
    if template is None:
        raise ValidationError(f"Unknown template: {template_id!r}")
    merged_categories = dict(template.categories)
    merged_categories.update(categories or {})
    # Template radii only for categories that stay enabled.
    merged_distances = {
        name: radius for name, radius in template.distance_map.items()
        if merged_categories.get(name) is not False
    }
    merged_distances.update(distances or {})
    return merged_categories, merged_distances


# =============================================================================
# Parsers
# =============================================================================

def parse_property_profile_request(body) -> PropertyProfileRequest:
    body = _require_object(body)
    template = _str_field(body, "template")
    categories, distances = _apply_template(
        template,
        parse_categories(body.get("categories")),
        parse_distances(body.get("distances")),
    )
    return PropertyProfileRequest(
        refresh=_bool_field(body, "refresh"),
        categories=categories,
        distances=distances,
        profile_name=_str_field(body, "profile_name"),
        template=template,
    )


def parse_ad_hoc_profile_request(body) -> AdHocProfileRequest:
    body = _require_object(body)
    latitude = _coordinate(body, "latitude", 90)
    longitude = _coordinate(body, "longitude", 180)
    if latitude is None or longitude is None:
        raise MissingCoordinatesError("latitude and longitude are required for ad-hoc profiles")
    template = _str_field(body, "template")
    categories, distances = _apply_template(
        template,
        parse_categories(body.get("categories")),
        parse_distances(body.get("distances")),
    )
    return AdHocProfileRequest(
        latitude=latitude,
        longitude=longitude,
        address=_str_field(body, "address"),
        categories=categories,
        distances=distances,
        profile_name=_str_field(body, "profile_name"),
        template=template,
    )


def parse_radius_update_request(body) -> RadiusUpdateRequest:
    body = _require_object(body)
    distances = parse_distances(body.get("distances"))
    if not distances:
        raise ValidationError("distances must name at least one category")
    return RadiusUpdateRequest(distances=distances, refresh=_bool_field(body, "refresh"))


def parse_personalized_profile_request(body) -> PersonalizedProfileRequest:
    """Categories come from an explicit list, or from questionnaire responses."""
    body = _require_object(body)
    raw_categories = body.get("categories")
    responses = body.get("responses")

    if raw_categories is not None:
        if not isinstance(raw_categories, list) or not raw_categories:
            raise ValidationError("categories must be a non-empty list")
        names = []
        for name in raw_categories:
            canonical = _category(name, "categories")
            if canonical not in names:
                names.append(canonical)
    elif responses is not None:
        responses = _require_object(responses, "responses")
        names = categories_from_questionnaire(responses)
        if not names:
            raise ValidationError("Questionnaire responses did not map to any category")
    else:
        raise ValidationError("Either categories or responses is required")

    distances = parse_distances(body.get("distances")) or {}
    for name in names:
        distances.setdefault(name, default_radius(name))

    return PersonalizedProfileRequest(
        categories=names,
        distances=distances,
        profile_name=_str_field(body, "profile_name"),
    )
