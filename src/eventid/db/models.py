"""EventID database models.

Two ownership domains share one metadata:
- Audit log: ``events`` (append-only, owned by the EventStore)
- Workspace configuration: ``workspaces``, ``platform_integrations``,
  ``event_subscriptions``, ``automation_rules`` (owned by the external
  management plane, read-only here) and ``workflow_history`` (owned by the
  WorkflowEngine)

Immutability of ``events`` is enforced twice: database triggers reject every
UPDATE/DELETE, and ORM hooks refuse to emit one in the first place.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    DDL,
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB as _JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, ORMExecuteState, Session, mapped_column

from eventid.errors import ImmutableEventError

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONB = JSON().with_variant(_JSONB(), "postgresql")

# BIGSERIAL on PostgreSQL; SQLite only autoincrements INTEGER PRIMARY KEY.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class with common utilities."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
        list[str]: JSONB,
        list[dict[str, Any]]: JSONB,
        datetime: DateTime(timezone=True),
    }

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dict for serialization."""
        return {
            c.name: getattr(self, c.name)
            for c in self.__table__.columns
        }


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class WorkflowStatus(str, Enum):
    """Workflow run lifecycle: started → in_progress → completed | failed."""
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED)

    def can_transition_to(self, target: WorkflowStatus) -> bool:
        return target in _TRANSITIONS[self]

    @classmethod
    def predecessors_of(cls, target: WorkflowStatus) -> list[WorkflowStatus]:
        return [s for s in cls if target in _TRANSITIONS[s]]


_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.STARTED: frozenset({WorkflowStatus.IN_PROGRESS, WorkflowStatus.FAILED}),
    WorkflowStatus.IN_PROGRESS: frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.FAILED}),
    WorkflowStatus.COMPLETED: frozenset(),
    WorkflowStatus.FAILED: frozenset(),
}


class StepOutcome(str, Enum):
    """Outcome of one action inside a workflow run."""
    SUCCEEDED = "succeeded"
    RETRIED_SUCCEEDED = "retried_succeeded"
    FAILED = "failed"


# ═══════════════════════════════════════════════════════════════════════════════
# AUDIT LOG
# ═══════════════════════════════════════════════════════════════════════════════

class Event(Base):
    """Immutable append-only log of all platform events."""

    __tablename__ = "events"
    __table_args__ = (
        Index("idx_events_platform", "platform"),
        Index("idx_events_event_type", "event_type"),
        Index("idx_events_timestamp", "timestamp"),
        Index(
            "idx_events_correlation_id", "correlation_id",
            postgresql_where="correlation_id IS NOT NULL",
        ),
        Index("idx_events_user_id", "user_id", postgresql_where="user_id IS NOT NULL"),
        {"comment": "Immutable append-only log of all platform events"},
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False,
        comment="UUIDv7 time-ordered event identifier"
    )
    event_version: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    platform: Mapped[str] = mapped_column(String(50), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    correlation_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="Links related events in workflows"
    )
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_data: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, comment="Complete event payload"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


@event.listens_for(Event, "before_update")
def _reject_event_update(mapper: Any, connection: Any, target: Event) -> None:
    raise ImmutableEventError(f"Event {target.event_id} is immutable and cannot be modified")


@event.listens_for(Event, "before_delete")
def _reject_event_delete(mapper: Any, connection: Any, target: Event) -> None:
    raise ImmutableEventError(f"Event {target.event_id} is immutable and cannot be deleted")


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_event_mutation(state: ORMExecuteState) -> None:
    """Bulk ``update(Event)`` / ``delete(Event)`` bypass the mapper hooks above."""
    if not (state.is_update or state.is_delete):
        return
    mappers = list(state.all_mappers)
    if state.bind_mapper is not None:
        mappers.append(state.bind_mapper)
    if any(m.class_ is Event for m in mappers):
        raise ImmutableEventError()


# Database-level immutability. One statement per DDL: asyncpg prepares each
# statement separately.
_PG_IMMUTABILITY_DDL = (
    """
    CREATE OR REPLACE FUNCTION prevent_event_modification()
    RETURNS TRIGGER AS $$
    BEGIN
        RAISE EXCEPTION 'Events are immutable and cannot be modified or deleted';
    END;
    $$ LANGUAGE plpgsql
    """,
    """
    CREATE TRIGGER prevent_event_update
        BEFORE UPDATE ON events
        FOR EACH ROW
        EXECUTE FUNCTION prevent_event_modification()
    """,
    """
    CREATE TRIGGER prevent_event_delete
        BEFORE DELETE ON events
        FOR EACH ROW
        EXECUTE FUNCTION prevent_event_modification()
    """,
)

_SQLITE_IMMUTABILITY_DDL = (
    """
    CREATE TRIGGER prevent_event_update
    BEFORE UPDATE ON events
    BEGIN
        SELECT RAISE(ABORT, 'Events are immutable and cannot be modified or deleted');
    END
    """,
    """
    CREATE TRIGGER prevent_event_delete
    BEFORE DELETE ON events
    BEGIN
        SELECT RAISE(ABORT, 'Events are immutable and cannot be modified or deleted');
    END
    """,
)

for _statement in _PG_IMMUTABILITY_DDL:
    event.listen(Event.__table__, "after_create", DDL(_statement).execute_if(dialect="postgresql"))
for _statement in _SQLITE_IMMUTABILITY_DDL:
    event.listen(Event.__table__, "after_create", DDL(_statement).execute_if(dialect="sqlite"))


# ═══════════════════════════════════════════════════════════════════════════════
# WORKSPACE CONFIGURATION (read-only for the engine)
# ═══════════════════════════════════════════════════════════════════════════════

class Workspace(Base):
    """Compliance workspace configuration."""

    __tablename__ = "workspaces"
    __table_args__ = (
        Index("idx_workspaces_user_id", "user_id"),
        Index("idx_workspaces_active", "active", postgresql_where="active = true"),
        Index("idx_workspaces_jurisdiction", "jurisdiction"),
        {"comment": "Compliance workspace configurations"},
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    frameworks: Mapped[list[str]] = mapped_column(
        JSONB, default=list, nullable=False,
        comment="Compliance frameworks: GDPR, HIPAA, SOC2, PCI_DSS, ISO27001"
    )
    jurisdiction: Mapped[str] = mapped_column(String(50), nullable=False)
    modules: Mapped[list[str]] = mapped_column(
        JSONB, default=list, nullable=False,
        comment="Capability tags: DATABASE, API, ENCRYPTION, ..."
    )
    github_repo: Mapped[str | None] = mapped_column(String(500), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    settings: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


class PlatformIntegration(Base):
    """Platform integration settings per workspace."""

    __tablename__ = "platform_integrations"
    __table_args__ = (
        UniqueConstraint("workspace_id", "platform", name="uq_integration_workspace_platform"),
        Index("idx_integrations_platform", "platform"),
        {"comment": "Platform integration settings per workspace"},
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(
        ForeignKey("workspaces.workspace_id", ondelete="CASCADE"), nullable=False
    )
    platform: Mapped[str] = mapped_column(
        String(50), nullable=False, comment="scraper|code|scan|review"
    )
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    configuration: Mapped[dict[str, Any]] = mapped_column(
        JSONB, default=dict,
        comment="Integration config; 'endpoint' is the platform base URL"
    )
    last_sync: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class EventSubscription(Base):
    """Which event types each workspace subscribes to."""

    __tablename__ = "event_subscriptions"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "event_type", "platform",
            name="uq_subscription_workspace_type_platform",
        ),
        Index("idx_subscriptions_event_type", "event_type", "platform"),
        {"comment": "Event type subscriptions per workspace"},
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(
        ForeignKey("workspaces.workspace_id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    platform: Mapped[str] = mapped_column(String(50), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    filters: Mapped[dict[str, Any]] = mapped_column(
        JSONB, default=dict, comment="Condition document, {} matches everything"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class AutomationRule(Base):
    """Workspace-specific automation logic."""

    __tablename__ = "automation_rules"
    __table_args__ = (
        Index("idx_rules_workspace", "workspace_id"),
        Index("idx_rules_event_type", "event_type"),
        Index("idx_rules_priority", "priority"),
        {"comment": "Custom automation rules per workspace"},
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(
        ForeignKey("workspaces.workspace_id", ondelete="CASCADE"), nullable=False
    )
    rule_name: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    conditions: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    actions: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority: Mapped[int | None] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


# ═══════════════════════════════════════════════════════════════════════════════
# WORKFLOW HISTORY (owned by the WorkflowEngine)
# ═══════════════════════════════════════════════════════════════════════════════

class WorkflowRun(Base):
    """One execution of an automation rule triggered by one event for one workspace."""

    __tablename__ = "workflow_history"
    __table_args__ = (
        UniqueConstraint(
            "trigger_event_id", "workspace_id", "rule_name",
            name="uq_workflow_trigger_rule",
        ),
        Index("idx_workflow_workspace", "workspace_id"),
        Index("idx_workflow_status", "status"),
        Index("idx_workflow_started", "started_at"),
        Index("idx_workflow_trigger", "trigger_event_id"),
        {"comment": "History of executed workflows"},
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    workflow_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    workspace_id: Mapped[str | None] = mapped_column(
        ForeignKey("workspaces.workspace_id"), nullable=True
    )
    workflow_type: Mapped[str] = mapped_column(String(100), nullable=False)
    rule_name: Mapped[str] = mapped_column(String(255), nullable=False)
    trigger_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, comment="started|in_progress|completed|failed"
    )
    steps: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, default=list, nullable=False)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    @property
    def workflow_status(self) -> WorkflowStatus:
        return WorkflowStatus(self.status)
