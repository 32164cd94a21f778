"""Immutable audit-log persistence."""

from eventid.store.event_store import EventQuery, EventStatistic, EventStore

__all__ = ["EventQuery", "EventStatistic", "EventStore"]
