#!/usr/bin/env python3
"""
Database Migration — Create campaign engine tables from SQLAlchemy models.

Usage:
    # Create missing tables:
    python scripts/migrate_db.py

    # Against a specific config file:
    python scripts/migrate_db.py --config /etc/campaign-engine/settings.yaml

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import inspect  # noqa: E402


def _table_names(sync_conn) -> list[str]:
    return inspect(sync_conn).get_table_names()


async def run_migration(config_path: str = None, check_only: bool = False) -> int:
    from config.settings import load_settings
    settings = load_settings(config_path)

    from database.models import Base
    from database.session import build_engine, close_db, init_db

    engine = build_engine(settings.database.url, echo=settings.debug)
    defined = set(Base.metadata.tables.keys())
    url = str(engine.url)
    print(f"Database: {engine.dialect.name}")
    print(f"URL: {url.split('@')[-1]}")

    try:
        if check_only:
            async with engine.connect() as conn:
                existing = set(await conn.run_sync(_table_names))
            print(f"Tables defined: {', '.join(sorted(defined))}")
            print(f"Tables existing: {', '.join(sorted(existing)) or '(none)'}")
            missing = defined - existing
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist.")
            return 0

        if settings.database.store_backend != "sql":
            print(f"Note: store_backend is '{settings.database.store_backend}'; "
                  "tables are created but the engine will not use them.")

        print("Running database migration...")
        await init_db(engine)
        async with engine.connect() as conn:
            existing = set(await conn.run_sync(_table_names))
        print(f"Tables created/verified: {', '.join(sorted(defined & existing))}")
        print("Migration complete.")
        return 0
    finally:
        await close_db(engine)


def main():
    parser = argparse.ArgumentParser(description="Campaign engine database migration")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(config_path=args.config, check_only=args.check)))


if __name__ == "__main__":
    main()
