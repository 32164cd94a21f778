"""Append-only, idempotent persistence of events.

Exactly-once audit semantics on top of at-least-once delivery come from one
place: the unique constraint on ``events.event_id``. ``store_event`` is an
``INSERT ... ON CONFLICT (event_id) DO NOTHING``, so duplicate and concurrent
writes of the same event collapse into a single row without an error.

There is no update or delete API. Any attempt made through the ORM raises
ImmutableEventError; any attempt made in raw SQL is rejected by the
database triggers installed with the schema.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import Text, cast, distinct, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventid.db.models import Event
from eventid.db.session import session_scope
from eventid.errors import ImmutableEventError, TransientStorageError
from eventid.schema.events import EventEnvelope, EventType, Platform

logger = structlog.get_logger()

_IMMUTABLE_MARKER = "immutable"


@dataclass(frozen=True)
class EventQuery:
    """Read-only filter over the audit log. Unset fields do not filter."""

    platform: Platform | None = None
    event_type: EventType | None = None
    since: datetime | None = None
    until: datetime | None = None
    correlation_id: str | None = None
    user_id: str | None = None
    workspace_id: str | None = None
    framework: str | None = None
    severity: str | None = None
    limit: int = 100
    offset: int = 0


@dataclass(frozen=True)
class EventStatistic:
    platform: str
    event_type: str
    event_date: date
    event_count: int
    workflow_count: int


def _payload_text(expr: Any, *path: str) -> Any:
    return expr[path].as_string()


def translate_db_error(exc: DBAPIError) -> Exception:
    """Map a driver error onto the pipeline taxonomy."""
    if _IMMUTABLE_MARKER in str(exc.orig).lower():
        return ImmutableEventError(str(exc.orig))
    if isinstance(exc, (OperationalError, InterfaceError)) or exc.connection_invalidated:
        return TransientStorageError(f"database unavailable: {exc.orig}")
    return exc


class EventStore:
    """Audit-log persistence for EventEnvelopes."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        write_timeout_s: float = 10.0,
    ) -> None:
        self._session_factory = session_factory
        self._write_timeout_s = write_timeout_s

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def store_event(self, envelope: EventEnvelope) -> bool:
        """Persist *envelope* once.

        Returns True when a new row was written, False when an event with the
        same event_id already exists (redelivery). Never errors on duplicates.
        """
        try:
            return await asyncio.wait_for(self._insert(envelope), timeout=self._write_timeout_s)
        except asyncio.TimeoutError as e:
            raise TransientStorageError(
                f"storing event {envelope.event_id} timed out after {self._write_timeout_s:g}s"
            ) from e
        except DBAPIError as e:
            translated = translate_db_error(e)
            if translated is e:
                raise
            raise translated from e
        except (ConnectionError, OSError) as e:
            raise TransientStorageError(f"database unavailable: {e}") from e

    async def _insert(self, envelope: EventEnvelope) -> bool:
        values = {
            "event_id": envelope.event_id,
            "event_version": envelope.event_version,
            "event_type": envelope.event_type.value,
            "platform": envelope.platform.value,
            "timestamp": envelope.timestamp,
            "correlation_id": envelope.correlation_id,
            "user_id": envelope.user_id,
            "event_data": envelope.event_data,
        }
        async with session_scope(self._session_factory) as db:
            dialect = db.get_bind().dialect.name
            if dialect == "postgresql":
                stmt = postgresql.insert(Event).values(**values)
            elif dialect == "sqlite":
                stmt = sqlite.insert(Event).values(**values)
            else:
                raise NotImplementedError(f"unsupported database dialect: {dialect}")
            stmt = stmt.on_conflict_do_nothing(index_elements=[Event.event_id])
            result = await db.execute(stmt)
            stored = result.rowcount == 1

        if stored:
            logger.debug(
                "event_stored",
                event_id=envelope.event_id,
                event_type=envelope.event_type.value,
                platform=envelope.platform.value,
            )
        else:
            logger.info("event_duplicate_ignored", event_id=envelope.event_id)
        return stored

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_event(self, event_id: str) -> EventEnvelope | None:
        async with self._session_factory() as db:
            row = await db.scalar(select(Event).where(Event.event_id == event_id))
        return to_envelope(row) if row is not None else None

    async def query_events(self, query: EventQuery) -> list[EventEnvelope]:
        """Filter the audit log, newest first."""
        stmt = select(Event)
        if query.platform is not None:
            stmt = stmt.where(Event.platform == query.platform.value)
        if query.event_type is not None:
            stmt = stmt.where(Event.event_type == query.event_type.value)
        if query.since is not None:
            stmt = stmt.where(Event.timestamp >= query.since)
        if query.until is not None:
            stmt = stmt.where(Event.timestamp < query.until)
        if query.correlation_id is not None:
            stmt = stmt.where(Event.correlation_id == query.correlation_id)
        if query.user_id is not None:
            stmt = stmt.where(Event.user_id == query.user_id)
        if query.workspace_id is not None:
            stmt = stmt.where(_payload_text(Event.event_data, "workspace_id") == query.workspace_id)
        if query.framework is not None:
            stmt = stmt.where(
                _payload_text(Event.event_data, "jurisdiction", "framework") == query.framework
            )
        if query.severity is not None:
            stmt = stmt.where(
                _payload_text(Event.event_data, "risk_context", "change_severity")
                == query.severity.upper()
            )
        stmt = stmt.order_by(Event.timestamp.desc(), Event.id.desc())
        stmt = stmt.limit(query.limit).offset(query.offset)

        async with self._session_factory() as db:
            rows = (await db.scalars(stmt)).all()
        return [to_envelope(r) for r in rows]

    async def get_correlated(self, correlation_id: str) -> list[EventEnvelope]:
        """Every event of one workflow chain, oldest first."""
        stmt = (
            select(Event)
            .where(Event.correlation_id == correlation_id)
            .order_by(Event.timestamp.asc(), Event.id.asc())
        )
        async with self._session_factory() as db:
            rows = (await db.scalars(stmt)).all()
        return [to_envelope(r) for r in rows]

    async def search(self, text: str, limit: int = 50) -> list[EventEnvelope]:
        """Full-text search over the event payload."""
        async with self._session_factory() as db:
            document = cast(Event.event_data, Text)
            if db.get_bind().dialect.name == "postgresql":
                condition = func.to_tsvector("english", document).op("@@")(
                    func.plainto_tsquery("english", text)
                )
            else:
                condition = func.lower(document).contains(text.lower(), autoescape=True)
            stmt = (
                select(Event)
                .where(condition)
                .order_by(Event.timestamp.desc(), Event.id.desc())
                .limit(limit)
            )
            rows = (await db.scalars(stmt)).all()
        return [to_envelope(r) for r in rows]

    async def statistics(self, since: datetime | None = None) -> list[EventStatistic]:
        """Counts per (platform, event_type, day) with distinct workflow chains."""
        event_date = func.date(Event.timestamp)
        stmt = (
            select(
                Event.platform,
                Event.event_type,
                event_date.label("event_date"),
                func.count().label("event_count"),
                func.count(distinct(Event.correlation_id)).label("workflow_count"),
            )
            .group_by(Event.platform, Event.event_type, event_date)
            .order_by(event_date.desc(), Event.platform, Event.event_type)
        )
        if since is not None:
            stmt = stmt.where(Event.timestamp >= since)
        async with self._session_factory() as db:
            rows = (await db.execute(stmt)).all()
        return [
            EventStatistic(
                platform=r.platform,
                event_type=r.event_type,
                event_date=r.event_date if isinstance(r.event_date, date) else date.fromisoformat(str(r.event_date)),
                event_count=r.event_count,
                workflow_count=r.workflow_count,
            )
            for r in rows
        ]

    async def recent_events(self, days: int = 7, limit: int = 100) -> list[dict[str, Any]]:
        """Projection of the last *days* of events with the commonly queried payload fields."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        stmt = (
            select(
                Event.event_id,
                Event.event_type,
                Event.platform,
                Event.timestamp,
                Event.correlation_id,
                _payload_text(Event.event_data, "workspace_id").label("workspace_id"),
                _payload_text(Event.event_data, "jurisdiction", "framework").label("framework"),
                _payload_text(Event.event_data, "risk_context", "change_severity").label("severity"),
            )
            .where(Event.timestamp >= cutoff)
            .order_by(Event.timestamp.desc())
            .limit(limit)
        )
        async with self._session_factory() as db:
            rows = (await db.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]


def to_envelope(row: Event) -> EventEnvelope:
    timestamp = row.timestamp
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return EventEnvelope(
        event_id=row.event_id,
        event_version=row.event_version,
        event_type=EventType(row.event_type),
        platform=Platform(row.platform),
        timestamp=timestamp,
        correlation_id=row.correlation_id,
        user_id=row.user_id,
        event_data=row.event_data,
    )
