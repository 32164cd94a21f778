"""RedisStreamLog against a recording client (no Redis server needed)."""

from __future__ import annotations

import zlib
from typing import Any

import pytest

from eventid.broker.log import LogMessage, partition_for
from eventid.broker.redis_streams import RedisStreamLog


class RecordingRedis:
    """The subset of redis.asyncio.Redis used by RedisStreamLog."""

    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.pending: dict[str, list] = {}
        self.new: dict[str, list] = {}
        self.added: list[tuple[str, dict]] = []
        self.acked: list[tuple[str, str]] = []
        self.lease_available = True
        self.lease_renewed = 1
        self.closed = False

    def register_script(self, script: str):
        name = "renew" if "PEXPIRE" in script else "release"

        async def call(keys, args):
            self.calls.append((name, keys[0], args[0]))
            return self.lease_renewed if name == "renew" else 1

        return call

    async def xgroup_create(self, stream, group, id, mkstream):
        self.calls.append(("xgroup_create", stream, group, id))

    async def set(self, key, value, nx, px):
        self.calls.append(("set", key, value, px))
        return self.lease_available

    async def xautoclaim(self, stream, group, consumer, min_idle_time, start_id, count):
        self.calls.append(("xautoclaim", stream, consumer, min_idle_time))
        return [b"0-0", [], []]

    async def xreadgroup(self, group, consumer, streams, count, block=None):
        (stream, cursor), = streams.items()
        self.calls.append(("xreadgroup", stream, cursor, block))
        source = self.pending if cursor == "0" else self.new
        entries = source.pop(stream, [])
        return [[stream.encode(), entries]] if entries else []

    async def xack(self, stream, group, offset):
        self.acked.append((stream, offset))

    async def xadd(self, stream, fields):
        self.added.append((stream, fields))
        return b"1700000000000-0"

    async def aclose(self):
        self.closed = True


@pytest.fixture
def client() -> RecordingRedis:
    return RecordingRedis()


@pytest.fixture
def log(client) -> RedisStreamLog:
    return RedisStreamLog(
        "redis://localhost:6379/0",
        topic="regulatory-events",
        group="eventid-consumer-audit",
        consumer="worker-a",
        partitions=2,
        lease_ttl_s=1.5,
        client=client,
    )


class TestLayout:
    def test_keys(self, log):
        assert log.stream_key(1) == "regulatory-events:1"
        assert log.lease_key(0) == "regulatory-events:eventid-consumer-audit:lease:0"
        assert log.dlq_key == "regulatory-events:dlq"
        assert log.lease_ttl_ms == 1500

    def test_partition_for_is_stable(self):
        assert partition_for("corr-gdpr-1", 8) == zlib.crc32(b"corr-gdpr-1") % 8
        assert {partition_for(f"corr-{i}", 4) for i in range(200)} == {0, 1, 2, 3}


class TestAssign:
    async def test_first_assign_creates_groups_and_claims(self, log, client):
        assert await log.assign() == [0, 1]
        names = [c[0] for c in client.calls]
        assert names.count("xgroup_create") == 2
        assert names.count("set") == 2
        assert names.count("xautoclaim") == 2
        assert ("set", log.lease_key(0), "worker-a", 1500) in client.calls

    async def test_owned_partitions_are_renewed(self, log, client):
        await log.assign()
        client.calls.clear()
        assert await log.assign() == [0, 1]
        assert [c[0] for c in client.calls] == ["renew", "renew"]

    async def test_partitions_held_elsewhere(self, log, client):
        client.lease_available = False
        assert await log.assign() == []

    async def test_lost_lease_drops_partition(self, log, client):
        await log.assign()
        client.lease_renewed = 0
        client.lease_available = False
        assert await log.assign() == []


class TestFetch:
    async def test_pending_entries_come_first(self, log, client):
        await log.assign()
        stream = log.stream_key(0)
        client.pending[stream] = [(b"1-0", {b"value": b"old"})]
        client.new[stream] = [(b"2-0", {b"value": b"new"})]

        first = await log.fetch(0, max_count=10, block_ms=50)
        second = await log.fetch(0, max_count=10, block_ms=50)

        assert first == [LogMessage(partition=0, offset="1-0", value=b"old")]
        assert second == [LogMessage(partition=0, offset="2-0", value=b"new")]
        reads = [c for c in client.calls if c[0] == "xreadgroup"]
        assert [(c[2], c[3]) for c in reads] == [("0", None), ("0", None), (">", 50)]

    async def test_trimmed_pending_entry_is_acked(self, log, client):
        await log.assign()
        stream = log.stream_key(1)
        client.pending[stream] = [(b"3-0", {}), (b"4-0", {b"value": b"kept"})]

        messages = await log.fetch(1, max_count=10, block_ms=0)
        assert [m.offset for m in messages] == ["4-0"]
        assert client.acked == [(stream, "3-0")]

    async def test_rewind_replays_pending(self, log, client):
        await log.assign()
        await log.fetch(0, 10, 0)
        await log.fetch(0, 10, 0)
        client.calls.clear()

        await log.rewind(0)
        await log.fetch(0, 10, 0)
        assert client.calls[0][:3] == ("xreadgroup", log.stream_key(0), "0")


class TestWrites:
    async def test_publish_routes_by_key(self, log, client):
        message = await log.publish("corr-gdpr-1", b"payload")
        stream, fields = client.added[0]
        assert stream == log.stream_key(partition_for("corr-gdpr-1", 2))
        assert fields == {"value": b"payload"}
        assert message.offset == "1700000000000-0"

    async def test_dead_letter_records_then_acks(self, log, client):
        message = LogMessage(partition=1, offset="9-0", value=b"{bad")
        await log.dead_letter(message, "malformed_envelope", "not json", attempts=1)

        stream, fields = client.added[0]
        assert stream == "regulatory-events:dlq"
        assert fields["kind"] == "malformed_envelope"
        assert fields["attempts"] == 1
        assert fields["value"] == b"{bad"
        assert fields["consumer"] == "worker-a"
        assert client.acked == [(log.stream_key(1), "9-0")]

    async def test_close_releases_owned_leases(self, log, client):
        await log.assign()
        await log.close()
        released = [c for c in client.calls if c[0] == "release"]
        assert [c[1] for c in released] == [log.lease_key(0), log.lease_key(1)]
        assert client.closed
