"""
Amenity category vocabulary for location insights.

Every category name accepted by the API, stored on a profile, or produced by
the questionnaire mapping is defined here. Radii are meters.

Frozen dataclasses keep the table type-checked without a YAML/JSON layer.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple


@dataclass(frozen=True)
class CategoryConfig:
    """Search parameters for one amenity category."""
    name: str
    label: str
    place_types: Tuple[str, ...]   # Google Places types; one Nearby Search per type
    keyword: str
    default_radius_m: int
    limit: int = 10


@dataclass(frozen=True)
class ProfileTemplate:
    """A named preset of enabled categories and their radii."""
    template_id: str
    name: str
    description: str
    distances: Tuple[Tuple[str, int], ...]

    @property
    def categories(self) -> Dict[str, bool]:
        return {name: True for name, _ in self.distances}

    @property
    def distance_map(self) -> Dict[str, int]:
        return dict(self.distances)


# Upper bound on any requested radius. Google Nearby Search caps at 50 km.
MAX_RADIUS_M = 50000

_MEDICAL_TYPES = ("hospital", "health", "doctor")

CATEGORIES: Dict[str, CategoryConfig] = {
    c.name: c for c in (
        # Education
        CategoryConfig("schools", "Schools", ("school", "university"), "school", 5000),
        CategoryConfig("elementary", "Elementary Schools", ("primary_school", "school"), "elementary school", 3000),
        CategoryConfig("middle_school", "Middle Schools", ("school",), "middle school", 3000),
        CategoryConfig("high_school", "High Schools", ("secondary_school", "school"), "high school", 5000),
        CategoryConfig("university", "Universities", ("university",), "university", 5000),
        CategoryConfig("library", "Libraries", ("library",), "library", 3000),
        CategoryConfig("daycare", "Daycare", ("school",), "daycare", 3000, limit=5),
        # Health
        CategoryConfig("hospitals", "Hospitals", _MEDICAL_TYPES, "medical", 10000, limit=5),
        CategoryConfig("healthcare", "Healthcare", ("doctor", "health", "pharmacy"), "healthcare", 5000, limit=5),
        CategoryConfig("pharmacy", "Pharmacies", ("pharmacy", "drugstore"), "pharmacy", 2000),
        # Recreation & lifestyle
        CategoryConfig("parks", "Parks", ("park",), "park", 3000),
        CategoryConfig("gyms", "Gyms & Fitness", ("gym",), "gym", 3000, limit=5),
        CategoryConfig("shopping", "Shopping", ("shopping_mall", "department_store", "store"), "shopping", 5000),
        CategoryConfig("grocery", "Grocery Stores", ("supermarket", "grocery_or_supermarket"), "grocery", 3000),
        CategoryConfig("restaurants", "Restaurants", ("restaurant", "meal_takeaway"), "restaurant", 3000),
        CategoryConfig("dining", "Dining", ("restaurant", "cafe", "meal_takeaway"), "restaurant", 3000),
        CategoryConfig("nightlife", "Nightlife", ("bar", "night_club"), "nightlife", 3000),
        # Services & transport
        CategoryConfig("services", "Services", ("bank", "gas_station", "car_repair", "laundry"), "service", 2000),
        CategoryConfig("bank", "Banks & ATMs", ("bank", "atm"), "bank", 2000),
        CategoryConfig("transit_stations", "Transit Stations", ("transit_station", "bus_station", "subway_station"), "transit", 2000, limit=5),
    )
}

# Alternate spellings seen in older clients and in questionnaire output.
CATEGORY_ALIASES: Dict[str, str] = {
    "gym": "gyms",
    "fitness": "gyms",
    "hospital": "hospitals",
    "pharmacies": "pharmacy",
    "transit": "transit_stations",
    "bus_stops": "transit_stations",
    "universities": "university",
    "libraries": "library",
    "malls": "shopping",
    "recreation": "parks",
    "playgrounds": "parks",
    "coffee": "dining",
    "lunch_spots": "dining",
    "gas_stations": "services",
    "auto_repair": "services",
    "elementary_school": "elementary",
}

# Searched when a request names no categories.
DEFAULT_CATEGORIES: Tuple[str, ...] = (
    "schools",
    "hospitals",
    "parks",
    "shopping",
    "dining",
    "services",
    "gyms",
    "transit_stations",
    "daycare",
    "healthcare",
)


def resolve_category(name) -> Optional[str]:
    """Canonical category name for *name*, or None if it is not in the vocabulary."""
    if not isinstance(name, str):
        return None
    key = name.strip().lower()
    if key in CATEGORIES:
        return key
    return CATEGORY_ALIASES.get(key)


def default_radius(category: str) -> int:
    return CATEGORIES[category].default_radius_m


def default_category_map() -> Dict[str, bool]:
    return {name: True for name in DEFAULT_CATEGORIES}


def default_distance_map(categories: Iterable[str]) -> Dict[str, int]:
    return {name: CATEGORIES[name].default_radius_m for name in categories}


def enabled_categories(categories: Mapping[str, bool]) -> List[str]:
    """Categories whose flag is anything but an explicit False, in input order."""
    return [name for name, flag in categories.items() if flag is not False]


# =============================================================================
# Templates
# =============================================================================

PROFILE_TEMPLATES: Dict[str, ProfileTemplate] = {
    t.template_id: t for t in (
        ProfileTemplate(
            "family", "Family Living", "Schools, parks, daycare, grocery stores",
            (("elementary", 3000), ("middle_school", 3000), ("high_school", 5000),
             ("parks", 3000), ("daycare", 3000), ("healthcare", 5000),
             ("shopping", 5000), ("dining", 3000), ("grocery", 3000),
             ("pharmacy", 2000)),
        ),
        ProfileTemplate(
            "urban", "Urban Living", "Transit, dining, shopping, nightlife",
            (("transit_stations", 2000), ("dining", 3000), ("shopping", 5000),
             ("gyms", 3000), ("services", 2000), ("bank", 2000),
             ("nightlife", 3000)),
        ),
        ProfileTemplate(
            "student", "Student Focus", "Universities, libraries, transit, dining",
            (("university", 5000), ("library", 3000), ("transit_stations", 2000),
             ("dining", 3000), ("gyms", 3000), ("grocery", 3000)),
        ),
        ProfileTemplate(
            "senior", "Senior Living", "Hospitals, healthcare, pharmacies, parks",
            (("hospitals", 5000), ("healthcare", 3000), ("pharmacy", 2000),
             ("parks", 2000), ("grocery", 2000), ("bank", 2000)),
        ),
        ProfileTemplate(
            "healthcare", "Healthcare Focus", "Hospitals, healthcare, pharmacies",
            (("hospitals", 10000), ("healthcare", 5000), ("pharmacy", 3000),
             ("services", 2000)),
        ),
        ProfileTemplate(
            "complete", "Complete Profile", "All categories for comprehensive insights",
            (("elementary", 3000), ("middle_school", 3000), ("high_school", 5000),
             ("hospitals", 10000), ("parks", 3000), ("shopping", 5000),
             ("dining", 3000), ("services", 2000), ("gyms", 3000),
             ("transit_stations", 2000), ("daycare", 3000), ("healthcare", 5000),
             ("grocery", 3000), ("pharmacy", 2000), ("bank", 2000),
             ("library", 3000), ("university", 5000), ("nightlife", 3000)),
        ),
    )
}


# =============================================================================
# Lead questionnaire -> categories
# =============================================================================

# (question, answer, categories). An answer matches when it equals the
# response value or is contained in a list response.
_QUESTIONNAIRE_RULES: Tuple[Tuple[str, str, Tuple[str, ...]], ...] = (
    ("family_situation", "young_children", ("schools", "daycare", "parks")),
    ("family_situation", "teenagers", ("schools", "daycare", "parks")),
    ("family_situation", "young_children", ("daycare", "playgrounds")),
    ("lifestyle_priorities", "fitness", ("gyms", "fitness", "recreation")),
    ("lifestyle_priorities", "dining", ("restaurants", "dining")),
    ("lifestyle_priorities", "shopping", ("shopping", "malls", "grocery")),
    ("lifestyle_priorities", "education", ("schools", "universities", "libraries")),
    ("lifestyle_priorities", "healthcare", ("hospitals", "pharmacies", "healthcare")),
    ("lifestyle_priorities", "transportation", ("transit_stations", "bus_stops")),
    ("transportation", "car_primary", ("gas_stations", "auto_repair", "parking")),
    ("transportation", "transit_primary", ("transit_stations", "bus_stops")),
    ("transportation", "mixed", ("transit_stations", "bus_stops")),
    ("transportation", "walking_cycling", ("walkability", "bike_paths", "parks")),
    ("work_location", "downtown", ("transit_stations", "coffee", "lunch_spots")),
    ("future_plans", "starting_family", ("schools", "daycare", "parks", "family_services")),
    ("future_plans", "growing_family", ("schools", "daycare", "parks", "family_services")),
    ("future_plans", "retirement", ("healthcare", "recreation", "senior_services")),
)


def _answer_matches(value, answer: str) -> bool:
    if isinstance(value, (list, tuple)):
        return answer in value
    return value == answer


def categories_from_questionnaire(responses: Mapping[str, object]) -> List[str]:
    """Map questionnaire answers to canonical categories.

    Order is first-seen; duplicates and answers with no searchable category
    (e.g. "walkability", "parking") are dropped.
    """
    result: List[str] = []
    for question, answer, names in _QUESTIONNAIRE_RULES:
        if not _answer_matches(responses.get(question), answer):
            continue
        for name in names:
            canonical = resolve_category(name)
            if canonical and canonical not in result:
                result.append(canonical)
    return result


def vocabulary_dict() -> Dict[str, object]:
    """JSON-ready view of categories and templates for API clients."""
    return {
        "categories": [
            {
                "name": c.name,
                "label": c.label,
                "default_radius_m": c.default_radius_m,
                "limit": c.limit,
            }
            for c in CATEGORIES.values()
        ],
        "defaults": list(DEFAULT_CATEGORIES),
        "max_radius_m": MAX_RADIUS_M,
        "templates": [
            {
                "id": t.template_id,
                "name": t.name,
                "description": t.description,
                "categories": t.categories,
                "distances": t.distance_map,
            }
            for t in PROFILE_TEMPLATES.values()
        ],
    }
