"""EventID observability package: metrics and logging setup."""

from eventid.observability.logging import configure_logging
from eventid.observability.metrics import MetricsCollector

__all__ = ["MetricsCollector", "configure_logging"]
