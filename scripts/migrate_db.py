#!/usr/bin/env python3
"""
Database Migration — Create/update follow-up tables from SQLAlchemy models.

Usage:
    # Local:
    python scripts/migrate_db.py

    # Against another config file:
    FOLLOWUP_CONFIG=/etc/followup/settings.yaml python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(conn, dialect: str) -> list[str]:
    from sqlalchemy import text

    # Database-specific table listing
    if dialect == "postgresql":
        result = await conn.execute(text(
            "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
        ))
    elif dialect == "mysql":
        result = await conn.execute(text("SHOW TABLES"))
    else:  # sqlite
        result = await conn.execute(text(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        ))
    return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False):
    from config.settings import load_settings
    settings = load_settings()

    from database.session import create_engine_for, init_db, close_db
    from database.models import Base

    engine = create_engine_for(settings.database.url)
    dialect = engine.dialect.name
    url = str(engine.url)

    try:
        if check_only:
            print(f"Database: {dialect}")
            print(f"URL: {url.split('@')[-1] if '@' in url else url}")
            print(f"Tables defined: {', '.join(Base.metadata.tables.keys())}")

            async with engine.connect() as conn:
                existing = await _existing_tables(conn, dialect)
            print(f"Tables existing: {', '.join(existing) or '(none)'}")

            missing = set(Base.metadata.tables.keys()) - set(existing)
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
            else:
                print("All tables exist. ✓")
            return

        print("Running database migration...")
        await init_db(engine)

        async with engine.connect() as conn:
            tables = await _existing_tables(conn, dialect)
        print(f"Tables created/verified: {', '.join(tables)}")
        print("Migration complete. ✓")
    finally:
        await close_db(engine)


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check))


if __name__ == "__main__":
    main()
