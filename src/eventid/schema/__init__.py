"""Event envelope and recognized event types."""

from eventid.schema.events import (
    EventEnvelope,
    EventType,
    Platform,
    Severity,
    new_correlation_id,
    new_event_id,
)

__all__ = [
    "EventEnvelope",
    "EventType",
    "Platform",
    "Severity",
    "new_correlation_id",
    "new_event_id",
]
