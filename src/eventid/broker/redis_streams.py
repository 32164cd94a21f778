"""Redis Streams implementation of the partitioned log.

Layout for topic ``regulatory-events`` with 8 partitions:

    regulatory-events:0 … regulatory-events:7     one stream per partition
    regulatory-events:<group>:lease:<n>            partition ownership lease
    regulatory-events:dlq                          dead-letter stream

Every partition stream has the same consumer group. Exclusive ownership of a
partition is a lease key (SET NX PX, renewed by compare-and-expire), so each
partition is consumed by exactly one instance at a time and in order. When an
instance takes a partition over it XAUTOCLAIMs everything the previous owner
left unacknowledged, which is how at-least-once redelivery after a crash or
rebalance happens.
"""

from __future__ import annotations

from datetime import datetime, timezone

import redis.asyncio as redis
import structlog

from eventid.broker.log import LogMessage, partition_for

logger = structlog.get_logger()

# Renew the lease only if we still hold it.
_RENEW_LEASE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return 0
"""

# Release the lease only if we still hold it.
_RELEASE_LEASE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisStreamLog:
    """Consumer-group member over ``partitions`` Redis streams."""

    def __init__(
        self,
        redis_url: str,
        topic: str,
        group: str,
        consumer: str,
        partitions: int,
        lease_ttl_s: float = 15.0,
        client: redis.Redis | None = None,
    ) -> None:
        self.topic = topic
        self.group = group
        self.consumer = consumer
        self.partitions = partitions
        self.lease_ttl_ms = int(lease_ttl_s * 1000)

        self._redis = client or redis.from_url(redis_url)
        self._renew = self._redis.register_script(_RENEW_LEASE)
        self._release = self._redis.register_script(_RELEASE_LEASE)
        self._groups_ready = False
        self._owned: set[int] = set()
        self._draining: set[int] = set()  # partitions still replaying our own pending entries

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def stream_key(self, partition: int) -> str:
        return f"{self.topic}:{partition}"

    def lease_key(self, partition: int) -> str:
        return f"{self.topic}:{self.group}:lease:{partition}"

    @property
    def dlq_key(self) -> str:
        return f"{self.topic}:dlq"

    # ------------------------------------------------------------------
    # Group membership
    # ------------------------------------------------------------------

    async def _ensure_groups(self) -> None:
        if self._groups_ready:
            return
        for partition in range(self.partitions):
            try:
                await self._redis.xgroup_create(
                    self.stream_key(partition), self.group, id="0", mkstream=True
                )
            except redis.ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise
        self._groups_ready = True
        logger.info("consumer_groups_ready", topic=self.topic, group=self.group, partitions=self.partitions)

    async def assign(self) -> list[int]:
        await self._ensure_groups()
        owned: set[int] = set()
        for partition in range(self.partitions):
            key = self.lease_key(partition)
            if partition in self._owned:
                if await self._renew(keys=[key], args=[self.consumer, self.lease_ttl_ms]):
                    owned.add(partition)
                    continue
                logger.warning("partition_lease_lost", partition=partition, consumer=self.consumer)
            if await self._redis.set(key, self.consumer, nx=True, px=self.lease_ttl_ms):
                await self._take_over(partition)
                owned.add(partition)

        gained = owned - self._owned
        if gained:
            logger.info("partitions_assigned", partitions=sorted(gained), consumer=self.consumer)
        self._owned = owned
        self._draining &= owned
        return sorted(owned)

    async def _take_over(self, partition: int) -> None:
        """Claim every pending entry of the partition, whoever it was delivered to."""
        stream = self.stream_key(partition)
        start = "0-0"
        claimed = 0
        while True:
            response = await self._redis.xautoclaim(
                stream, self.group, self.consumer, min_idle_time=0, start_id=start, count=100
            )
            next_start, entries = response[0], response[1]
            claimed += len(entries)
            start = next_start.decode() if isinstance(next_start, bytes) else next_start
            if start == "0-0":
                break
        self._draining.add(partition)
        if claimed:
            logger.info("partition_pending_reclaimed", partition=partition, entries=claimed)

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    async def fetch(self, partition: int, max_count: int, block_ms: int) -> list[LogMessage]:
        stream = self.stream_key(partition)
        if partition in self._draining:
            response = await self._redis.xreadgroup(
                self.group, self.consumer, {stream: "0"}, count=max_count
            )
            messages = await self._to_messages(partition, response)
            if messages:
                return messages
            self._draining.discard(partition)

        response = await self._redis.xreadgroup(
            self.group, self.consumer, {stream: ">"}, count=max_count, block=block_ms
        )
        return await self._to_messages(partition, response)

    async def _to_messages(self, partition: int, response: list) -> list[LogMessage]:
        messages: list[LogMessage] = []
        for _stream, entries in response or []:
            for entry_id, fields in entries:
                offset = entry_id.decode() if isinstance(entry_id, bytes) else entry_id
                if not fields or b"value" not in fields:
                    # Entry trimmed from the stream while pending.
                    await self._redis.xack(self.stream_key(partition), self.group, offset)
                    logger.warning("pending_entry_missing", partition=partition, offset=offset)
                    continue
                messages.append(LogMessage(partition=partition, offset=offset, value=fields[b"value"]))
        return messages

    async def rewind(self, partition: int) -> None:
        if partition in self._owned:
            self._draining.add(partition)

    async def ack(self, message: LogMessage) -> None:
        await self._redis.xack(self.stream_key(message.partition), self.group, message.offset)

    async def dead_letter(self, message: LogMessage, kind: str, error: str, attempts: int) -> None:
        await self._redis.xadd(self.dlq_key, {
            "partition": message.partition,
            "offset": message.offset,
            "kind": kind,
            "error": error,
            "attempts": attempts,
            "consumer": self.consumer,
            "dead_lettered_at": datetime.now(timezone.utc).isoformat(),
            "value": message.value,
        })
        await self.ack(message)

    # ------------------------------------------------------------------
    # Production
    # ------------------------------------------------------------------

    async def publish(self, key: str, value: bytes) -> LogMessage:
        partition = partition_for(key, self.partitions)
        entry_id = await self._redis.xadd(self.stream_key(partition), {"value": value})
        offset = entry_id.decode() if isinstance(entry_id, bytes) else entry_id
        return LogMessage(partition=partition, offset=offset, value=value)

    async def close(self) -> None:
        for partition in sorted(self._owned):
            try:
                await self._release(keys=[self.lease_key(partition)], args=[self.consumer])
            except redis.RedisError as e:
                logger.warning("partition_lease_release_failed", partition=partition, error=str(e))
        self._owned.clear()
        await self._redis.aclose()
