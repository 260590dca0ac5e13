import os
import sys
import io
import csv
import logging
import uuid
import secrets
from functools import wraps
from flask import Flask, request, jsonify, g, Response
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

load_dotenv()

from li_trace import TraceContext, set_trace, clear_trace
from categories import vocabulary_dict
from maps_client import (
    GoogleMapsClient, ProviderConfigError, ProviderUnavailableError, TRAVEL_MODES,
)
from distance_profile import (
    DistanceProfileEngine, GenerateRequest,
    ValidationError, UnauthorizedError, ForbiddenError,
    NotFoundError, PropertyNotFoundError, ProfileNotFoundError, ConflictError,
)
from payloads import (
    parse_property_profile_request, parse_ad_hoc_profile_request,
    parse_radius_update_request, parse_personalized_profile_request,
)
from models import (
    init_db, get_property, get_profile, get_realtor_by_token,
)

# ---------------------------------------------------------------------------
# Sentry error tracking: gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            # Google Maps outages and timeouts: logged, surfaced as 500, not actionable
            if exc_type is not None and issubclass(exc_type, ProviderUnavailableError) \
                    and not issubclass(exc_type, ProviderConfigError):
                sentry_sdk.add_breadcrumb(
                    category="google_maps",
                    message=msg,
                    level="warning",
                )
                return None
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(
                    category="http",
                    message=msg,
                    level="warning",
                )
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RAILWAY_GIT_COMMIT_SHA"),
        environment=os.environ.get("RAILWAY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'insights-dev-key')
if (not app.config['SECRET_KEY'] or app.config['SECRET_KEY'] == 'insights-dev-key') and os.environ.get('FLASK_DEBUG') != '1':
    print("FATAL: SECRET_KEY is not set. Refusing to start with insecure default.", file=sys.stderr)
    print("Set SECRET_KEY in your environment or .env file.", file=sys.stderr)
    sys.exit(1)

# Behind a reverse proxy that sets X-Forwarded-For; Flask-Limiter and the
# request log need the real client address.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: every generate/update call fans out into one Places
# request per category, so those routes get a much tighter budget.
# In-memory storage is per-process.
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_GENERATE = os.environ.get("RATE_LIMIT_GENERATE", "20/hour")
app.config["RATELIMIT_ENABLED"] = os.environ.get("RATELIMIT_ENABLED", "true").lower() != "false"

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

CRON_SECRET = os.environ.get("CRON_SECRET", "")

# ---------------------------------------------------------------------------
# Startup: warn immediately if required config is missing
# ---------------------------------------------------------------------------
if not os.environ.get("GOOGLE_MAPS_API_KEY"):
    logger.warning(
        "GOOGLE_MAPS_API_KEY is not set. "
        "Distance profile generation will fail until it is configured. "
        "For local development, copy .env.example to .env and add your key."
    )


def _build_engine():
    """One Google Maps client serves as geocoder, places and travel-time provider."""
    client = GoogleMapsClient.from_env()
    return DistanceProfileEngine(places=client, geocoder=client, travel=client)


# Tests swap this for an engine wired to fake providers.
app.config["ENGINE_FACTORY"] = _build_engine


def _engine() -> DistanceProfileEngine:
    return app.config["ENGINE_FACTORY"]()


# ---------------------------------------------------------------------------
# Request ID middleware: every request gets a unique ID for tracing
# ---------------------------------------------------------------------------
def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()
    g.realtor = None
    g.trace = None


@app.after_request
def _after_request(response):
    response.headers["X-Request-ID"] = getattr(g, "request_id", "")
    return response


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

def _bearer_token():
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_realtor(view):
    """Resolve the bearer token to a realtor and store it on g.realtor."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        token = _bearer_token()
        if not token:
            raise UnauthorizedError("Authentication required")
        realtor = get_realtor_by_token(token)
        if not realtor:
            raise UnauthorizedError("Invalid API token")
        realtor["is_admin"] = bool(realtor["is_admin"])
        g.realtor = realtor
        return view(*args, **kwargs)
    return wrapper


def _owned_property(property_id):
    prop = get_property(property_id)
    if not prop:
        raise PropertyNotFoundError(f"Property {property_id} not found")
    if prop["realtor_id"] != g.realtor["realtor_id"] and not g.realtor["is_admin"]:
        raise ForbiddenError("You do not have access to this property")
    return prop


def _property_profile(property_id, profile_id):
    """Profile row that belongs to property_id, or ProfileNotFoundError."""
    profile = get_profile(profile_id)
    if not profile or profile["property_id"] != property_id:
        raise ProfileNotFoundError(f"Distance profile {profile_id} not found")
    return profile


def _own_ad_hoc_profile(profile_id):
    # Someone else's ad-hoc profile is indistinguishable from a missing one.
    profile = get_profile(profile_id)
    if (not profile or not profile["is_ad_hoc"]
            or profile["realtor_id"] != g.realtor["realtor_id"]):
        return None
    return profile


# ---------------------------------------------------------------------------
# Tracing helpers
# ---------------------------------------------------------------------------

def _wants_debug():
    return (request.args.get("debug") == "1"
            and g.realtor is not None and g.realtor["is_admin"])


def _traced(fn, *args, **kwargs):
    """Run an engine call under a fresh TraceContext and log its summary."""
    trace_ctx = TraceContext(trace_id=g.request_id)
    set_trace(trace_ctx)
    try:
        return fn(*args, **kwargs)
    finally:
        trace_ctx.log_summary()
        if _wants_debug():
            g.trace = trace_ctx.full_trace_dict()
        clear_trace()


def _report_response(report, status=200):
    body = dict(report)
    if g.trace is not None:
        body["_trace"] = g.trace
    return jsonify(body), status


def _check_service_config():
    """
    Validate required service configuration.
    Returns (is_ok, missing_keys) tuple.
    """
    missing = []
    if not os.environ.get("GOOGLE_MAPS_API_KEY"):
        missing.append("GOOGLE_MAPS_API_KEY")
    return (len(missing) == 0, missing)


# ---------------------------------------------------------------------------
# Property-bound profiles
# ---------------------------------------------------------------------------

@app.route("/properties/<property_id>/distance-profile", methods=["POST"])
@limiter.limit(RATE_LIMIT_GENERATE)
@require_realtor
def generate_property_profile(property_id):
    _owned_property(property_id)
    body = parse_property_profile_request(request.get_json(silent=True))
    logger.info(
        "[%s] Generating distance profile for property %s (refresh=%s)",
        g.request_id, property_id, body.refresh,
    )
    report = _traced(
        _engine().generate_distance_profile,
        GenerateRequest(
            property_id=property_id,
            realtor_id=g.realtor["realtor_id"],
            categories=body.categories,
            distances=body.distances,
            profile_name=body.profile_name,
            refresh=body.refresh,
        ),
    )
    return _report_response(report)


@app.route("/properties/<property_id>/distance-profile", methods=["GET"])
@require_realtor
def get_property_profile(property_id):
    _owned_property(property_id)
    report = _engine().get_distance_profile(property_id)
    if not report:
        raise ProfileNotFoundError("No active distance profile for this property")
    return _report_response(report)


@app.route("/properties/<property_id>/distance-profile", methods=["DELETE"])
@require_realtor
def delete_property_profile(property_id):
    _owned_property(property_id)
    deleted = _engine().delete_distance_profile(property_id)
    logger.info("[%s] Delete active profile for %s: deleted=%s",
                g.request_id, property_id, deleted)
    return jsonify({"success": True})


@app.route("/properties/<property_id>/distance-profile/reports")
@require_realtor
def list_property_reports(property_id):
    _owned_property(property_id)
    reports = _engine().get_all_distance_profiles(property_id)
    return jsonify({"property_id": property_id, "reports": reports})


@app.route("/properties/<property_id>/distance-profile/<profile_id>", methods=["GET"])
@require_realtor
def get_property_report(property_id, profile_id):
    _owned_property(property_id)
    _property_profile(property_id, profile_id)
    return _report_response(_engine().get_distance_profile_by_id(profile_id))


@app.route("/properties/<property_id>/distance-profile/<profile_id>", methods=["DELETE"])
@require_realtor
def delete_property_report(property_id, profile_id):
    _owned_property(property_id)
    profile = get_profile(profile_id)
    if profile and profile["property_id"] == property_id:
        _engine().delete_distance_profile_by_id(profile_id)
    return jsonify({"success": True})


@app.route("/properties/<property_id>/distance-profile/<profile_id>/update-radius",
           methods=["POST"])
@limiter.limit(RATE_LIMIT_GENERATE)
@require_realtor
def update_property_report_radius(property_id, profile_id):
    _owned_property(property_id)
    _property_profile(property_id, profile_id)
    body = parse_radius_update_request(request.get_json(silent=True))
    report = _traced(
        _engine().update_distance_profile_radius,
        profile_id, body.distances, refresh=body.refresh,
    )
    return _report_response(report)


@app.route("/properties/<property_id>/distance-profile/<profile_id>/csv")
@require_realtor
def export_property_report_csv(property_id, profile_id):
    """CSV export of a report: one row per place, grouped by category."""
    _owned_property(property_id)
    _property_profile(property_id, profile_id)
    report = _engine().get_distance_profile_by_id(profile_id)

    output = io.StringIO()
    writer = csv.writer(output)

    writer.writerow(["profile_id", "profile_name", "property_id", "created_at",
                     "updated_at", "total_places"])
    writer.writerow([
        report["profile"]["id"],
        report["profile"]["profile_name"],
        property_id,
        report["profile"]["created_at"],
        report["profile"]["updated_at"],
        report["summary"]["total_places"],
    ])

    writer.writerow([])
    writer.writerow(["travel_mode", "average_minutes"])
    for mode, minutes in report["summary"]["average_travel_times"].items():
        writer.writerow([mode, minutes if minutes is not None else ""])

    writer.writerow([])
    writer.writerow(["category", "radius_meters", "rank", "name", "address",
                     "distance_meters", "rating"] + [f"{m}_minutes" for m in TRAVEL_MODES])
    for category, item in report["line_items"].items():
        for rank, place in enumerate(item["places"], start=1):
            travel = place.get("travel_times") or {}
            writer.writerow([
                category,
                item["radius_meters"],
                rank,
                place.get("name", ""),
                place.get("address") or "",
                place.get("distance_meters", ""),
                place.get("rating") if place.get("rating") is not None else "",
            ] + [travel[m] if travel.get(m) is not None else "" for m in TRAVEL_MODES])

    return Response(
        output.getvalue(),
        mimetype="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename=location-insights-{profile_id}.csv"
        },
    )


@app.route("/properties/<property_id>/distance-profile/personalized", methods=["POST"])
@limiter.limit(RATE_LIMIT_GENERATE)
@require_realtor
def generate_personalized_profile(property_id):
    """Profile limited to categories picked by the client or derived from a questionnaire."""
    _owned_property(property_id)
    body = parse_personalized_profile_request(request.get_json(silent=True))
    logger.info("[%s] Personalized profile for %s: %s",
                g.request_id, property_id, ",".join(body.categories))
    report = _traced(
        _engine().generate_distance_profile,
        GenerateRequest(
            property_id=property_id,
            realtor_id=g.realtor["realtor_id"],
            categories=body.category_map,
            distances=body.distances,
            profile_name=body.profile_name or "Personalized Insights",
        ),
    )
    return _report_response(report)


# ---------------------------------------------------------------------------
# Ad-hoc profiles
# ---------------------------------------------------------------------------

@app.route("/location-insights/adhoc", methods=["POST"])
@limiter.limit(RATE_LIMIT_GENERATE)
@require_realtor
def create_ad_hoc_profile():
    body = parse_ad_hoc_profile_request(request.get_json(silent=True))
    logger.info("[%s] Generating ad-hoc profile at %.5f,%.5f",
                g.request_id, body.latitude, body.longitude)
    report = _traced(
        _engine().generate_distance_profile,
        GenerateRequest(
            realtor_id=g.realtor["realtor_id"],
            is_ad_hoc=True,
            ad_hoc_address=body.address,
            ad_hoc_latitude=body.latitude,
            ad_hoc_longitude=body.longitude,
            categories=body.categories,
            distances=body.distances,
            profile_name=body.profile_name,
        ),
    )
    return _report_response(report, 201)


@app.route("/location-insights/adhoc", methods=["GET"])
@require_realtor
def list_ad_hoc_profiles():
    profiles = _engine().get_ad_hoc_profiles(g.realtor["realtor_id"])
    return jsonify({"profiles": profiles})


@app.route("/location-insights/adhoc/<profile_id>", methods=["GET"])
@require_realtor
def get_ad_hoc_profile(profile_id):
    if not _own_ad_hoc_profile(profile_id):
        raise ProfileNotFoundError(f"Distance profile {profile_id} not found")
    return _report_response(_engine().get_distance_profile_by_id(profile_id))


@app.route("/location-insights/adhoc/<profile_id>", methods=["DELETE"])
@require_realtor
def delete_ad_hoc_profile(profile_id):
    if _own_ad_hoc_profile(profile_id):
        _engine().delete_distance_profile_by_id(profile_id)
    return jsonify({"success": True})


@app.route("/location-insights/categories")
def list_categories():
    """Category vocabulary and templates. Public; no provider calls."""
    return jsonify(vocabulary_dict())


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

def _authorize_cleanup():
    token = _bearer_token()
    if not token:
        raise UnauthorizedError("Authentication required")
    if CRON_SECRET and secrets.compare_digest(token, CRON_SECRET):
        return "cron"
    realtor = get_realtor_by_token(token)
    if not realtor:
        raise UnauthorizedError("Invalid API token")
    if not realtor["is_admin"]:
        raise ForbiddenError("Admin access required")
    return realtor["realtor_id"]


@app.route("/admin/cleanup-profiles", methods=["POST"])
@limiter.exempt
def cleanup_profiles():
    """Delete inactive profiles past retention and retire stale ad-hoc ones."""
    caller = _authorize_cleanup()
    data = request.get_json(silent=True) or {}
    retention_days = data.get("retention_days") if isinstance(data, dict) else None
    if retention_days is not None and (
            isinstance(retention_days, bool) or not isinstance(retention_days, int)
            or retention_days < 0):
        raise ValidationError("retention_days must be a non-negative integer")

    result = _engine().cleanup_old_deactivated_profiles(retention_days=retention_days)
    logger.info("[%s] Cleanup by %s: deleted=%d deactivated=%d",
                g.request_id, caller, result.deleted, result.deactivated)
    return jsonify(result.to_dict())


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    config_ok, missing = _check_service_config()
    return jsonify({
        "status": "ok" if config_ok else "degraded",
        "missing_keys": missing,
    }), 200 if config_ok else 503


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

def _error(message, status):
    return jsonify({
        "error": message,
        "request_id": getattr(g, "request_id", None),
    }), status


@app.errorhandler(ValidationError)
def handle_validation_error(e):
    return _error(str(e), 400)


@app.errorhandler(UnauthorizedError)
def handle_unauthorized(e):
    status = 403 if isinstance(e, ForbiddenError) else 401
    return _error(str(e), status)


@app.errorhandler(NotFoundError)
def handle_not_found(e):
    return _error(str(e), 404)


@app.errorhandler(ConflictError)
def handle_conflict(e):
    logger.warning("[%s] %s", getattr(g, "request_id", "-"), e)
    return _error(str(e), 409)


@app.errorhandler(ProviderUnavailableError)
def handle_provider_error(e):
    logger.error("[%s] Provider failure: %s", getattr(g, "request_id", "-"), e)
    if isinstance(e, ProviderConfigError):
        return _error("Location service is not configured correctly", 500)
    return _error("Location service is temporarily unavailable", 500)


@app.errorhandler(429)
def rate_limit_exceeded(e):
    return _error("Too many requests. Please wait and try again.", 429)


@app.errorhandler(404)
def not_found(e):
    return _error("Not found", 404)


@app.errorhandler(405)
def method_not_allowed(e):
    return _error("Method not allowed", 405)


@app.errorhandler(Exception)
def internal_error(e):
    if isinstance(e, HTTPException):
        return _error(e.description, e.code)
    logger.exception("[%s] Unhandled error", getattr(g, "request_id", "-"))
    return _error("Internal server error", 500)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Initialize database on import (safe to call repeatedly)
init_db()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
