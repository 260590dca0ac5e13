#!/usr/bin/env python3
"""
Retire old distance profiles. Meant for cron.

This script:
1. Deletes inactive profiles last updated more than --retention-days ago
   (line items go with them)
2. Deactivates ad-hoc profiles untouched for more than --adhoc-stale-days

Active profiles are never deleted. Safe to run repeatedly.

Usage:
    python scripts/cleanup_profiles.py
    python scripts/cleanup_profiles.py --retention-days 14
    python scripts/cleanup_profiles.py --dry-run
"""

import argparse
import logging
import os
import sys

from dotenv import load_dotenv

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

load_dotenv()

from models import init_db, get_profile_counts
from distance_profile import (
    DistanceProfileEngine, PROFILE_RETENTION_DAYS, ADHOC_STALE_DAYS,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)


def cleanup(retention_days: int, adhoc_stale_days: int, dry_run: bool = False):
    init_db()
    before = get_profile_counts()
    logger.info(
        "Profiles before cleanup: total=%d active=%d ad_hoc=%d",
        before["total"], before["active"], before["ad_hoc"],
    )
    if dry_run:
        logger.info(
            "Dry run: would delete inactive profiles older than %dd and "
            "deactivate ad-hoc profiles older than %dd",
            retention_days, adhoc_stale_days,
        )
        return None

    # Cleanup touches only the database; no provider is needed.
    engine = DistanceProfileEngine(places=None)
    result = engine.cleanup_old_deactivated_profiles(
        retention_days=retention_days, adhoc_stale_days=adhoc_stale_days,
    )
    after = get_profile_counts()
    logger.info(
        "Profiles after cleanup: total=%d active=%d ad_hoc=%d",
        after["total"], after["active"], after["ad_hoc"],
    )
    return result


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Delete old inactive distance profiles")
    parser.add_argument(
        "--retention-days", type=int, default=PROFILE_RETENTION_DAYS,
        help=f"Delete inactive profiles older than this (default {PROFILE_RETENTION_DAYS}).",
    )
    parser.add_argument(
        "--adhoc-stale-days", type=int, default=ADHOC_STALE_DAYS,
        help=f"Deactivate ad-hoc profiles older than this (default {ADHOC_STALE_DAYS}).",
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Print current counts and exit without changing anything.",
    )
    args = parser.parse_args()

    if args.retention_days < 0 or args.adhoc_stale_days < 0:
        logger.error("Day counts must be non-negative")
        sys.exit(1)

    result = cleanup(args.retention_days, args.adhoc_stale_days, dry_run=args.dry_run)
    if result is not None:
        print(f"deleted={result.deleted} deactivated={result.deactivated}")
