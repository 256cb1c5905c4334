#!/usr/bin/env python3
"""
Setup script for the bid optimizer tables
Creates the schema and optionally stores per-profile settings overrides
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from bayesian_bid_engine.config import OptimizerConfig
from bayesian_bid_engine.database import DatabaseConnector
from bayesian_bid_engine.exceptions import StoreUnavailable

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent.parent / 'src' / 'database' / 'bid_optimizer_schema.sql'


def setup_database_schema(db: DatabaseConnector) -> bool:
    """Create the bid optimizer tables"""
    if not SCHEMA_PATH.exists():
        logger.error(f"Schema file not found: {SCHEMA_PATH}")
        return False

    try:
        db.execute_script(SCHEMA_PATH.read_text())
    except StoreUnavailable as e:
        logger.error(f"Error creating database schema: {e}")
        return False

    logger.info("Database schema created successfully")
    return True


def store_profile_settings(db: DatabaseConnector, profile_id: str, settings_path: str,
                           dry_run: bool = False) -> bool:
    """Validate a JSON overrides file and save it for the profile"""
    with open(settings_path, 'r') as f:
        overrides = json.load(f)

    try:
        OptimizerConfig().with_overrides(overrides).validate()
    except ValueError as e:
        logger.error(f"Invalid settings for profile {profile_id}: {e}")
        return False

    if dry_run:
        logger.info(f"DRY RUN: Would save {len(overrides)} setting(s) for profile {profile_id}:")
        for key, value in overrides.items():
            logger.info(f"  {key}: {value}")
        return True

    db.set_optimizer_settings(profile_id, overrides)
    logger.info(f"Settings saved for profile {profile_id}")
    return True


def main():
    parser = argparse.ArgumentParser(description='Setup bid optimizer database tables')
    parser.add_argument('--profile-id', help='Profile to store settings overrides for')
    parser.add_argument('--settings', help='JSON file with settings overrides')
    parser.add_argument('--dry-run', action='store_true',
                        help='Show what would be stored without making changes')

    args = parser.parse_args()

    logger.info("=" * 60)
    logger.info("Bid Optimizer Database Setup")
    logger.info("=" * 60)

    try:
        db = DatabaseConnector()
    except ValueError as e:
        logger.error(f"Database configuration error: {e}")
        sys.exit(1)

    if not args.dry_run and not setup_database_schema(db):
        sys.exit(1)

    if args.settings:
        if not args.profile_id:
            logger.error("--settings requires --profile-id")
            sys.exit(2)
        if not store_profile_settings(db, args.profile_id, args.settings, dry_run=args.dry_run):
            sys.exit(1)

    sys.exit(0)


if __name__ == '__main__':
    main()
