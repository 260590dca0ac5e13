#!/usr/bin/env python3
"""
Geocode properties that have an address but no coordinates.

Distance profiles cannot be generated for a property without latitude and
longitude. This script finds those properties and fills the coordinates in
from the Google Geocoding API.

Addresses Google cannot resolve are logged and left alone. A rejected API
key stops the run; transient provider failures skip the property.

Usage:
    python scripts/backfill_property_coordinates.py
    python scripts/backfill_property_coordinates.py --limit 20 --sleep 0.5
    python scripts/backfill_property_coordinates.py --dry-run
"""

import argparse
import logging
import os
import sys
import time

from dotenv import load_dotenv

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

load_dotenv()

from models import init_db, get_properties_missing_coordinates, update_property_coordinates
from maps_client import GoogleMapsClient, ProviderConfigError, ProviderUnavailableError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)


def backfill(client, limit: int = 100, sleep_s: float = 0.0, dry_run: bool = False) -> dict:
    """Geocode up to *limit* properties. Returns counts by outcome."""
    init_db()
    counts = {"updated": 0, "not_found": 0, "failed": 0}
    properties = get_properties_missing_coordinates(limit=limit)
    logger.info("Found %d properties missing coordinates", len(properties))

    for prop in properties:
        try:
            coords = client.geocode(prop["address"])
        except ProviderConfigError:
            logger.error("Geocoding is not configured; stopping")
            raise
        except ProviderUnavailableError as e:
            logger.warning("  %s: geocode failed (%s)", prop["property_id"], e)
            counts["failed"] += 1
            continue

        if coords is None:
            logger.info("  %s: no result for %r", prop["property_id"], prop["address"])
            counts["not_found"] += 1
        else:
            lat, lng = coords
            logger.info("  %s: %.6f, %.6f", prop["property_id"], lat, lng)
            if not dry_run:
                update_property_coordinates(prop["property_id"], lat, lng)
            counts["updated"] += 1

        if sleep_s:
            time.sleep(sleep_s)

    logger.info(
        "Backfill done: updated=%d not_found=%d failed=%d%s",
        counts["updated"], counts["not_found"], counts["failed"],
        " (dry run)" if dry_run else "",
    )
    return counts


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Backfill property coordinates via geocoding")
    parser.add_argument(
        "--limit", type=int, default=100,
        help="Max properties to geocode in this run.",
    )
    parser.add_argument(
        "--sleep", type=float, default=0.0,
        help="Seconds to wait between geocode calls.",
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Geocode but do not write coordinates.",
    )
    args = parser.parse_args()

    client = GoogleMapsClient.from_env()
    if not client.configured:
        logger.error("GOOGLE_MAPS_API_KEY is not set")
        sys.exit(1)

    try:
        backfill(client, limit=args.limit, sleep_s=args.sleep, dry_run=args.dry_run)
    except ProviderConfigError as e:
        logger.error("%s", e)
        sys.exit(1)
