"""Partitioned log abstraction shared by the ingestor and the publisher.

A topic is split into a fixed number of partitions. Messages with the same
partition key (correlation_id, falling back to event_id) always land on the
same partition, so one workflow chain is consumed in order. The ingestor only
relies on the ``PartitionedLog`` protocol; ``RedisStreamLog`` is the
production implementation.
"""

from __future__ import annotations

import zlib
from dataclasses import dataclass
from typing import Protocol

import structlog

from eventid.schema.events import EventEnvelope

logger = structlog.get_logger()


def partition_for(key: str, partitions: int) -> int:
    """Stable key → partition mapping (CRC32, identical across processes)."""
    return zlib.crc32(key.encode("utf-8")) % partitions


@dataclass(frozen=True)
class LogMessage:
    """One delivery of a message from a partition."""

    partition: int
    offset: str
    value: bytes


class PartitionedLog(Protocol):
    """Consumer-group view of a partitioned topic with at-least-once delivery."""

    partitions: int

    async def assign(self) -> list[int]:
        """Acquire / renew partition ownership; return the partitions this instance owns."""
        ...

    async def fetch(self, partition: int, max_count: int, block_ms: int) -> list[LogMessage]:
        """Next unacknowledged messages of *partition*, redeliveries first."""
        ...

    async def ack(self, message: LogMessage) -> None:
        """Advance past *message*; it will not be delivered again."""
        ...

    async def rewind(self, partition: int) -> None:
        """Redeliver this instance's unacknowledged messages of *partition* on the next fetch."""
        ...

    async def dead_letter(self, message: LogMessage, kind: str, error: str, attempts: int) -> None:
        """Record *message* as permanently failed, then acknowledge it."""
        ...

    async def publish(self, key: str, value: bytes) -> LogMessage:
        """Append *value* to the partition selected by *key*."""
        ...

    async def close(self) -> None: ...


class EventPublisher:
    """Publishes envelopes onto the topic (used by workflows for follow-up events)."""

    def __init__(self, log: PartitionedLog) -> None:
        self._log = log

    async def publish(self, envelope: EventEnvelope) -> LogMessage:
        message = await self._log.publish(envelope.partition_key, envelope.encode())
        logger.info(
            "event_published",
            event_id=envelope.event_id,
            event_type=envelope.event_type.value,
            correlation_id=envelope.correlation_id,
            partition=message.partition,
            offset=message.offset,
        )
        return message
