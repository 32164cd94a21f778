"""Broker consumer driving the store → match → execute pipeline."""

from eventid.ingest.ingestor import EventHandler, EventIngestor, Outcome

__all__ = ["EventHandler", "EventIngestor", "Outcome"]
