#!/usr/bin/env python3
"""Run the EventID consumer service (ingestor + health/metrics HTTP server).

Usage:
    python scripts/run.py                 # Port from EVENTID_METRICS_PORT (9090)
    python scripts/run.py --port 9100     # Custom port
    python scripts/run.py --reload        # Auto-reload (development)
"""

import argparse
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import structlog

from eventid.config import settings
from eventid.observability.logging import configure_logging

logger = structlog.get_logger()


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the EventID consumer service")
    parser.add_argument("--port", type=int, default=settings.metrics_port, help="HTTP port for /health and /metrics")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    args = parser.parse_args()

    import uvicorn

    configure_logging(settings.log_level, settings.env)
    logger.info(
        "starting_eventid",
        port=args.port,
        topic=settings.topic,
        consumer_group=settings.consumer_group,
        consumer=settings.consumer_name,
    )

    try:
        uvicorn.run(
            "eventid.app:create_app",
            factory=True,
            host="0.0.0.0",
            port=args.port,
            reload=args.reload,
        )
        return 0
    except KeyboardInterrupt:
        logger.info("shutting_down", reason="keyboard_interrupt")
        return 0
    except Exception as e:
        logger.error("fatal_error", error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
