#!/usr/bin/env python3
"""Show recent events from the audit log, or per-day statistics.

Usage:
    python scripts/recent_events.py                  # last 7 days, 20 rows
    python scripts/recent_events.py --days 1 --limit 50
    python scripts/recent_events.py --stats          # counts per platform/type/day
    python scripts/recent_events.py --correlation corr-1234
"""

import argparse
import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from eventid.config import settings
from eventid.db.session import create_engine, create_session_factory
from eventid.observability.logging import configure_logging
from eventid.store.event_store import EventStore


async def show(args: argparse.Namespace) -> int:
    engine = create_engine(settings.database_url)
    store = EventStore(create_session_factory(engine))
    try:
        if args.stats:
            since = datetime.now(timezone.utc) - timedelta(days=args.days)
            for stat in await store.statistics(since=since):
                print(
                    f"{stat.event_date}  {stat.platform:<8} {stat.event_type:<22} "
                    f"events={stat.event_count:<6} workflows={stat.workflow_count}"
                )
        elif args.correlation:
            for event in await store.get_correlated(args.correlation):
                depth = event.causation_depth
                print(f"{event.timestamp.isoformat()}  {'  ' * depth}{event.event_type.value}  {event.event_id}")
        else:
            for row in await store.recent_events(days=args.days, limit=args.limit):
                print(
                    f"{row['timestamp']}  {row['platform']:<8} {row['event_type']:<22} "
                    f"{row['workspace_id'] or '-':<22} {row['framework'] or '-':<8} "
                    f"{row['severity'] or '-':<8} {row['event_id']}"
                )
        return 0
    finally:
        await engine.dispose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Show recent EventID events")
    parser.add_argument("--days", type=int, default=7)
    parser.add_argument("--limit", type=int, default=20)
    parser.add_argument("--stats", action="store_true", help="Per-day statistics instead of rows")
    parser.add_argument("--correlation", help="Show one correlation chain, oldest first")
    args = parser.parse_args()

    configure_logging(settings.log_level, settings.env)
    return asyncio.run(show(args))


if __name__ == "__main__":
    sys.exit(main())
