#!/usr/bin/env python3
"""
Database Migration: Create tables from SQLAlchemy models and load seed data.

Usage:
    python scripts/migrate_db.py              # create tables
    python scripts/migrate_db.py --seed       # create tables + default templates, articles, suggestions
    python scripts/migrate_db.py --check      # report status only (no changes)
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(conn, dialect: str) -> list[str]:
    from sqlalchemy import text

    if dialect == "postgresql":
        result = await conn.execute(text("SELECT tablename FROM pg_tables WHERE schemaname = 'public'"))
    elif dialect == "mysql":
        result = await conn.execute(text("SHOW TABLES"))
    else:  # sqlite
        result = await conn.execute(text(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        ))
    return [row[0] for row in result.fetchall()]


async def run_migration(config_path: str = None, check_only: bool = False, seed: bool = False):
    from config.settings import load_settings
    load_settings(config_path)

    from database.models import Base
    from database.session import close_db, get_engine, init_db

    engine = get_engine()
    dialect = engine.dialect.name
    url = str(engine.url)
    print(f"Database: {dialect} ({url.split('@')[-1] if '@' in url else url})")

    if check_only:
        async with engine.connect() as conn:
            existing = await _existing_tables(conn, dialect)
        print(f"Tables defined: {', '.join(Base.metadata.tables.keys())}")
        print(f"Tables existing: {', '.join(existing) or '(none)'}")
        missing = set(Base.metadata.tables.keys()) - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        await close_db()
        return

    print("Running database migration...")
    await init_db()
    async with engine.connect() as conn:
        print(f"Tables created/verified: {', '.join(await _existing_tables(conn, dialect))}")

    if seed:
        from database.seed import seed_all
        from database.store import SqlStore

        counts = await seed_all(SqlStore())
        print(f"Seeded: {counts}")

    await close_db()
    print("Migration complete. ✓")


def main():
    parser = argparse.ArgumentParser(description="LMS Engage database migration")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--seed", action="store_true", help="Load default templates, articles and suggestions")
    args = parser.parse_args()

    asyncio.run(run_migration(args.config, check_only=args.check, seed=args.seed))


if __name__ == "__main__":
    main()
