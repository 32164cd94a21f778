#!/usr/bin/env python3
"""Initialize the EventID database.

Usage:
    python scripts/init_db.py              # Create tables + triggers from models (dev only)
    python scripts/init_db.py --migrate    # Run Alembic migrations (production)
    python scripts/init_db.py --reset      # Drop and recreate (DANGER)
    python scripts/init_db.py --seed       # Also insert the sample workspaces
"""

import argparse
import asyncio
import sys

# Add src to path
sys.path.insert(0, "src")

from sqlalchemy import text

from eventid.config import settings
from eventid.db.seed import seed_sample_data
from eventid.db.session import create_engine, create_session_factory, drop_db, init_db
from eventid.observability.logging import configure_logging


def run_migrations() -> None:
    """Run Alembic migrations (production)."""
    import alembic.command
    import alembic.config

    alembic_cfg = alembic.config.Config("alembic.ini")
    alembic.command.upgrade(alembic_cfg, "head")
    print("✓ Alembic migrations applied")


async def verify_connection(engine) -> None:
    """Test database connection."""
    async with engine.connect() as conn:
        if engine.dialect.name == "postgresql":
            result = await conn.execute(text("SELECT version()"))
        else:
            result = await conn.execute(text("SELECT sqlite_version()"))
        print(f"✓ Connected to: {result.scalar()}")


async def main() -> int:
    parser = argparse.ArgumentParser(description="Initialize EventID database")
    parser.add_argument("--migrate", action="store_true", help="Run Alembic migrations")
    parser.add_argument("--reset", action="store_true", help="Drop and recreate tables (DANGER)")
    parser.add_argument("--seed", action="store_true", help="Insert sample workspaces, rules and subscriptions")
    args = parser.parse_args()

    configure_logging(settings.log_level, settings.env)
    print(f"Database URL: {settings.database_url.split('@')[-1]}")
    print()

    engine = create_engine(settings.database_url)
    try:
        await verify_connection(engine)
        print()

        if args.reset:
            print("⚠️  DANGER: Dropping all tables...")
            await drop_db(engine)
            print("✓ All tables dropped")
            print()

        if args.migrate:
            # alembic drives its own event loop
            await asyncio.to_thread(run_migrations)
        else:
            await init_db(engine)
            print("✓ Tables created from models")

        if args.seed:
            added = await seed_sample_data(create_session_factory(engine))
            print(f"✓ Sample workspaces added: {added}")

        print()
        print("✅ Database initialization complete!")
        return 0

    except Exception as e:
        print(f"❌ Error: {e}")
        return 1

    finally:
        await engine.dispose()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
