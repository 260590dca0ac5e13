"""Shared fixtures for the location insights test suite.

Provides a Flask test client wired to a temporary SQLite database, fake
Google Maps providers (places, reverse geocoding, travel times), and a few
realtors/properties to authenticate with.
"""

import atexit
import math
import os
import tempfile
import threading

import pytest

# Point the DB at a temp file BEFORE importing app/models (they read DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["INSIGHTS_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# Suppress the SECRET_KEY startup guard
os.environ.setdefault("SECRET_KEY", "test-secret-key")

# /healthz checks this; real calls never happen because the engine is faked
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "fake-key-for-tests")

# Empty beats pop: load_dotenv() won't override existing keys
os.environ["SENTRY_DSN"] = ""
os.environ["RATELIMIT_ENABLED"] = "false"
os.environ["CRON_SECRET"] = "test-cron-secret"

from app import app  # noqa: E402
from models import init_db, _get_db, create_realtor, create_property  # noqa: E402
from maps_client import haversine_meters, normalize_places  # noqa: E402
from categories import CATEGORIES  # noqa: E402
from distance_profile import DistanceProfileEngine  # noqa: E402

# Distances (meters, due north of the origin) of the fake places returned
# for every category.
FAKE_PLACE_DISTANCES = (250, 900, 1800, 4500)

METERS_PER_DEGREE_LAT = 6371000 * math.pi / 180


class FakePlaces:
    """Places provider returning a fixed ring of places per category.

    Results go through the real normalize_places so radius filtering and
    ordering match the Google client. Set ``fail[category]`` to an
    exception instance to make that category's search raise.
    """

    def __init__(self):
        self.calls = []
        self.fail = {}
        self._lock = threading.Lock()

    def search(self, lat, lng, category, radius_meters):
        with self._lock:
            self.calls.append((category, radius_meters))
        if category in self.fail:
            raise self.fail[category]
        raw = []
        for i, meters in enumerate(FAKE_PLACE_DISTANCES):
            raw.append({
                "place_id": f"{category}-{i}",
                "name": f"{CATEGORIES[category].label} {i}",
                "vicinity": f"{i + 1} Test Ave",
                "geometry": {"location": {
                    "lat": lat + meters / METERS_PER_DEGREE_LAT,
                    "lng": lng,
                }},
                "rating": 4.0,
                "types": list(CATEGORIES[category].place_types),
            })
        return normalize_places((lat, lng), raw, radius_meters, CATEGORIES[category].limit)

    def searched_categories(self):
        return [category for category, _ in self.calls]


class FakeGeocoder:
    def __init__(self, address="1 Reverse Rd, Vancouver, BC", error=None):
        self.address = address
        self.error = error
        self.calls = []

    def geocode(self, address):
        self.calls.append(("geocode", address))
        return (49.28, -123.12)

    def reverse_geocode(self, lat, lng):
        self.calls.append(("reverse_geocode", (lat, lng)))
        if self.error:
            raise self.error
        return self.address


class FakeTravel:
    """Distance Matrix stand-in: minutes derived from straight-line meters.

    Set ``fail[mode]`` to an exception instance to make that mode raise.
    """

    METERS_PER_MINUTE = {"driving": 500, "transit": 200, "walking": 80}

    def __init__(self):
        self.calls = []
        self.fail = {}
        self._lock = threading.Lock()

    def travel_times_batch(self, origin, destinations, mode):
        with self._lock:
            self.calls.append((mode, len(destinations)))
        if mode in self.fail:
            raise self.fail[mode]
        return [haversine_meters(origin, d) // self.METERS_PER_MINUTE[mode] for d in destinations]


@pytest.fixture(autouse=True)
def _fresh_db():
    """Reset the database before every test, keeping the schema."""
    init_db()
    conn = _get_db()
    for table in ("profile_line_items", "distance_profiles", "properties", "realtors"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    yield


@pytest.fixture()
def fake_places():
    return FakePlaces()


@pytest.fixture()
def fake_geocoder():
    return FakeGeocoder()


@pytest.fixture()
def engine(fake_places, fake_geocoder):
    return DistanceProfileEngine(places=fake_places, geocoder=fake_geocoder, max_workers=4)


@pytest.fixture()
def fake_travel():
    return FakeTravel()


@pytest.fixture()
def travel_engine(fake_places, fake_geocoder, fake_travel):
    return DistanceProfileEngine(places=fake_places, geocoder=fake_geocoder,
                                 travel=fake_travel, max_workers=4)


def _test_client(engine):
    app.config["TESTING"] = True
    original_factory = app.config["ENGINE_FACTORY"]
    app.config["ENGINE_FACTORY"] = lambda: engine
    with app.test_client() as c:
        yield c
    app.config["ENGINE_FACTORY"] = original_factory


@pytest.fixture()
def client(engine):
    """Flask test client whose routes use the fake-provider engine."""
    yield from _test_client(engine)


@pytest.fixture()
def travel_client(travel_engine):
    """Same as client, with travel times enabled."""
    yield from _test_client(travel_engine)


def _make_realtor(name, token, is_admin=False):
    realtor_id = create_realtor(name, f"{name.lower()}@example.com", token, is_admin=is_admin)
    return {
        "realtor_id": realtor_id,
        "token": token,
        "headers": {"Authorization": f"Bearer {token}"},
    }


@pytest.fixture()
def realtor():
    return _make_realtor("Rita", "token-rita")


@pytest.fixture()
def other_realtor():
    return _make_realtor("Omar", "token-omar")


@pytest.fixture()
def admin_realtor():
    return _make_realtor("Ada", "token-ada", is_admin=True)


@pytest.fixture()
def property_id(realtor):
    return create_property(realtor["realtor_id"], "123 Main St, Vancouver, BC", 49.28, -123.12)


@pytest.fixture()
def property_without_coords(realtor):
    return create_property(realtor["realtor_id"], "456 Unknown Rd", None, None)
