"""Pytest configuration and shared fixtures.

Run with:
    pytest tests/                         # Run all tests
    pytest tests/test_event_store.py -v   # Run specific test file

Database tests run against a per-test SQLite file through aiosqlite, using
the same models, constraints and immutability triggers as PostgreSQL. The
broker is replaced by ``InMemoryLog``; platform HTTP calls go through
``httpx.MockTransport``.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, AsyncGenerator, Callable

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from eventid.automation.matcher import WorkspaceMatcher
from eventid.broker.log import EventPublisher, LogMessage, partition_for
from eventid.db.seed import seed_sample_data
from eventid.db.session import create_engine, create_session_factory, init_db
from eventid.observability.metrics import MetricsCollector
from eventid.registry.workspaces import WorkspaceRegistry
from eventid.schema.events import EventEnvelope
from eventid.store.event_store import EventStore
from eventid.workflows.engine import WorkflowEngine
from eventid.workflows.runners import ActionRunner


# ─────────────────────────────────────────────────────────────────────────────
# Broker test double
# ─────────────────────────────────────────────────────────────────────────────

class InMemoryLog:
    """PartitionedLog kept in lists; every partition is owned by this instance."""

    def __init__(self, partitions: int = 4) -> None:
        self.partitions = partitions
        self.streams: dict[int, list[LogMessage]] = defaultdict(list)
        self.cursor: dict[int, int] = defaultdict(int)
        self.acked: list[LogMessage] = []
        self.dead_letters: list[dict[str, Any]] = []
        self.published: list[LogMessage] = []
        self.closed = False

    async def assign(self) -> list[int]:
        return list(range(self.partitions))

    async def fetch(self, partition: int, max_count: int, block_ms: int) -> list[LogMessage]:
        start = self.cursor[partition]
        batch = self.streams[partition][start:start + max_count]
        self.cursor[partition] += len(batch)
        if not batch:
            await asyncio.sleep(min(block_ms, 10) / 1000)
        return batch

    async def ack(self, message: LogMessage) -> None:
        self.acked.append(message)

    async def rewind(self, partition: int) -> None:
        return None

    async def dead_letter(self, message: LogMessage, kind: str, error: str, attempts: int) -> None:
        self.dead_letters.append({
            "message": message,
            "kind": kind,
            "error": error,
            "attempts": attempts,
        })
        await self.ack(message)

    async def publish(self, key: str, value: bytes) -> LogMessage:
        partition = partition_for(key, self.partitions)
        message = LogMessage(partition=partition, offset=f"{len(self.streams[partition])}-0", value=value)
        self.streams[partition].append(message)
        self.published.append(message)
        return message

    def put_raw(self, value: bytes, partition: int = 0) -> LogMessage:
        """Append bytes directly (for malformed payloads)."""
        message = LogMessage(partition=partition, offset=f"{len(self.streams[partition])}-0", value=value)
        self.streams[partition].append(message)
        return message

    def published_envelopes(self) -> list[EventEnvelope]:
        return [EventEnvelope.decode(m.value) for m in self.published]

    async def close(self) -> None:
        self.closed = True


# ─────────────────────────────────────────────────────────────────────────────
# Platform HTTP test double
# ─────────────────────────────────────────────────────────────────────────────

class PlatformRecorder:
    """Records requests and answers with a configurable handler."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responder: Callable[[httpx.Request], httpx.Response] = (
            lambda request: httpx.Response(202, json={"accepted": True})
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database with all tables and triggers."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'eventid_test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def seeded(session_factory: async_sessionmaker[AsyncSession]) -> async_sessionmaker[AsyncSession]:
    """Session factory over a database holding the three sample workspaces."""
    await seed_sample_data(session_factory)
    return session_factory


@pytest.fixture
def metrics() -> MetricsCollector:
    """Fresh MetricsCollector for each test (avoids state bleed)."""
    return MetricsCollector()


@pytest.fixture
def memory_log() -> InMemoryLog:
    return InMemoryLog()


@pytest.fixture
def platform() -> PlatformRecorder:
    return PlatformRecorder()


@pytest_asyncio.fixture
async def http_client(platform: PlatformRecorder) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(platform)) as client:
        yield client


@pytest.fixture
def store(session_factory) -> EventStore:
    return EventStore(session_factory)


@pytest.fixture
def registry(session_factory) -> WorkspaceRegistry:
    return WorkspaceRegistry(session_factory)


@pytest.fixture
def matcher(registry) -> WorkspaceMatcher:
    return WorkspaceMatcher(registry)


@pytest.fixture
def runner(memory_log, http_client) -> ActionRunner:
    return ActionRunner(EventPublisher(memory_log), http_client, max_emit_depth=3)


@pytest.fixture
def workflow_engine(session_factory, registry, runner, metrics) -> WorkflowEngine:
    return WorkflowEngine(
        session_factory,
        registry,
        runner,
        metrics,
        action_timeout_s=1.0,
        action_max_retries=2,
        retry_delay_s=0.01,
        retry_max_delay_s=0.05,
    )


def gdpr_update(**overrides: Any) -> EventEnvelope:
    """The canonical GDPR regulatory update from the scraper."""
    fields: dict[str, Any] = {
        "event_type": "REGULATORY_UPDATE",
        "platform": "scraper",
        "correlation_id": "corr-gdpr-1",
        "user_id": "user_789",
        "event_data": {
            "jurisdiction": {"framework": "GDPR", "region": "EU"},
            "risk_context": {"change_severity": "HIGH"},
            "regulation": {"title": "GDPR Art. 28 amendment"},
        },
    }
    fields.update(overrides)
    return EventEnvelope.model_validate(fields)
