"""Import sanity tests.

These lightweight tests verify that the WSGI entrypoint and core modules
can be imported without errors, the minimum bar for a deploy.
"""

import pytest


def test_app_module_imports():
    """The Flask app module must import without errors."""
    import app  # noqa: F401


def test_wsgi_app_object():
    """Gunicorn's 'app:app' entrypoint must resolve to a Flask instance."""
    from app import app as flask_app
    assert flask_app is not None
    assert hasattr(flask_app, "route"), "app object is not a Flask instance"


def test_engine_imports():
    """Core symbols used by app.py must be importable."""
    from distance_profile import DistanceProfileEngine, GenerateRequest, CleanupResult
    assert DistanceProfileEngine is not None
    assert GenerateRequest is not None
    assert CleanupResult is not None


def test_gunicorn_config_imports():
    import gunicorn_config
    assert callable(gunicorn_config.when_ready)


def test_scripts_import():
    """Cron scripts must import from the project root."""
    import importlib.util
    import os

    root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    for name in ("cleanup_profiles", "backfill_property_coordinates"):
        path = os.path.join(root, "scripts", f"{name}.py")
        spec = importlib.util.spec_from_file_location(name, path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        assert module is not None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
