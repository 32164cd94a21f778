#!/usr/bin/env python3
"""Publish a test regulatory event onto the broker.

Usage:
    python scripts/send_test_event.py                          # GDPR / EU / HIGH
    python scripts/send_test_event.py --framework HIPAA --region US
    python scripts/send_test_event.py --type VIOLATION_FOUND --platform scan
"""

import argparse
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from eventid.broker.log import EventPublisher
from eventid.broker.redis_streams import RedisStreamLog
from eventid.config import settings
from eventid.observability.logging import configure_logging
from eventid.schema.events import EventEnvelope, EventType, Platform, new_correlation_id


async def send(args: argparse.Namespace) -> int:
    log = RedisStreamLog(
        settings.broker_url,
        topic=settings.topic,
        group=settings.consumer_group,
        consumer=f"{settings.consumer_name}-producer",
        partitions=settings.partitions,
    )
    envelope = EventEnvelope(
        event_type=EventType(args.type),
        platform=Platform(args.platform),
        correlation_id=new_correlation_id(),
        user_id=args.user,
        event_data={
            "regulation": {
                "title": "Test regulatory update",
                "source": "send_test_event",
            },
            "jurisdiction": {"framework": args.framework, "region": args.region},
            "risk_context": {"change_severity": args.severity},
        },
    )
    try:
        message = await EventPublisher(log).publish(envelope)
    finally:
        await log.close()

    print(f"✓ Published {envelope.event_type.value} {envelope.event_id}")
    print(f"  correlation_id: {envelope.correlation_id}")
    print(f"  stream:         {log.stream_key(message.partition)} @ {message.offset}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Send a test event")
    parser.add_argument("--type", default=EventType.REGULATORY_UPDATE.value, choices=[t.value for t in EventType])
    parser.add_argument("--platform", default=Platform.SCRAPER.value, choices=[p.value for p in Platform])
    parser.add_argument("--framework", default="GDPR")
    parser.add_argument("--region", default="EU")
    parser.add_argument("--severity", default="HIGH", choices=["LOW", "MEDIUM", "HIGH", "CRITICAL"])
    parser.add_argument("--user", default="user_789")
    args = parser.parse_args()

    configure_logging(settings.log_level, settings.env)
    return asyncio.run(send(args))


if __name__ == "__main__":
    sys.exit(main())
