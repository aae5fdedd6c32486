#!/usr/bin/env python3
"""
Database Migration — Create/check the reply worker tables.

Usage:
    # Create missing tables:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check

    # Against a specific config:
    python scripts/migrate_db.py --config config/settings.yaml
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import inspect  # noqa: E402


def _existing_tables(sync_conn) -> list[str]:
    return inspect(sync_conn).get_table_names()


async def run_migration(check_only: bool = False, config_path: str = None) -> int:
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    from database.models import Base
    from database.session import Database

    settings = load_settings(config_path)
    db = Database.from_settings(settings.database)
    defined = list(Base.metadata.tables.keys())

    try:
        await db.ping()
        print(f"Database: {db.dialect}")
        print(f"URL: {str(db.engine.url).split('@')[-1]}")
        print(f"Tables defined: {', '.join(defined)}")

        if not check_only:
            print("Running database migration...")
            await db.create_schema()

        async with db.engine.connect() as conn:
            existing = await conn.run_sync(_existing_tables)
        print(f"Tables existing: {', '.join(existing) or '(none)'}")

        missing = sorted(set(defined) - set(existing))
        if missing:
            print(f"Tables MISSING: {', '.join(missing)}")
            print("Run without --check to create them.")
            return 1
        print("All tables exist. ✓")
        return 0
    finally:
        await db.close()


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--config", default=None, help="Path to settings YAML")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check, config_path=args.config)))


if __name__ == "__main__":
    main()
