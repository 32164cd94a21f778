"""Read-only access to workspace configuration.

Workspaces, integrations, subscriptions and automation rules are owned by
the external management plane; this module only reads them. Every read
returns frozen snapshot dataclasses detached from the session so the
matcher works on a consistent, immutable view. Staleness relative to
concurrent configuration edits is accepted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventid.automation.actions import Action, parse_actions
from eventid.automation.conditions import Condition, parse_condition
from eventid.db.models import (
    AutomationRule,
    EventSubscription,
    PlatformIntegration,
    Workspace,
)
from eventid.errors import InvalidRuleError
from eventid.schema.events import EventType, Platform

logger = structlog.get_logger()


# ═══════════════════════════════════════════════════════════════════════════════
# SNAPSHOT TYPES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class WorkspaceSnapshot:
    workspace_id: str
    user_id: str
    name: str
    frameworks: tuple[str, ...]
    jurisdiction: str
    modules: tuple[str, ...] = ()
    github_repo: str | None = None
    active: bool = True
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IntegrationSnapshot:
    workspace_id: str
    platform: Platform
    enabled: bool
    configuration: dict[str, Any] = field(default_factory=dict)
    last_sync: datetime | None = None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    workspace_id: str
    event_type: EventType
    platform: Platform
    enabled: bool
    filters: Condition


@dataclass(frozen=True)
class RuleSnapshot:
    workspace_id: str
    rule_name: str
    event_type: EventType
    conditions: Condition
    actions: tuple[Action, ...]
    enabled: bool = True
    priority: int = 0


@dataclass(frozen=True)
class RegistrySnapshot:
    """Everything the matcher needs for one (event_type, platform) pair."""

    subscriptions: tuple[SubscriptionSnapshot, ...] = ()
    integrations: dict[tuple[str, Platform], IntegrationSnapshot] = field(default_factory=dict)
    workspaces: dict[str, WorkspaceSnapshot] = field(default_factory=dict)
    rules: dict[str, tuple[RuleSnapshot, ...]] = field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════════
# ROW → SNAPSHOT
# ═══════════════════════════════════════════════════════════════════════════════

def workspace_snapshot(row: Workspace) -> WorkspaceSnapshot:
    return WorkspaceSnapshot(
        workspace_id=row.workspace_id,
        user_id=row.user_id,
        name=row.name,
        frameworks=tuple(row.frameworks or ()),
        jurisdiction=row.jurisdiction,
        modules=tuple(row.modules or ()),
        github_repo=row.github_repo,
        active=row.active,
        settings=dict(row.settings or {}),
    )


def integration_snapshot(row: PlatformIntegration) -> IntegrationSnapshot:
    return IntegrationSnapshot(
        workspace_id=row.workspace_id,
        platform=Platform(row.platform),
        enabled=row.enabled,
        configuration=dict(row.configuration or {}),
        last_sync=row.last_sync,
    )


def rule_snapshot(row: AutomationRule) -> RuleSnapshot:
    """Parse a rule row; raises InvalidRuleError for malformed documents."""
    return RuleSnapshot(
        workspace_id=row.workspace_id,
        rule_name=row.rule_name,
        event_type=EventType(row.event_type),
        conditions=parse_condition(row.conditions),
        actions=parse_actions(row.actions),
        enabled=row.enabled,
        priority=row.priority or 0,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# REGISTRY
# ═══════════════════════════════════════════════════════════════════════════════

class WorkspaceRegistry:
    """Read-only queries over workspace configuration tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def snapshot_for(self, event_type: EventType, platform: Platform) -> RegistrySnapshot:
        """Load subscriptions, integrations, workspaces and rules for one event kind.

        Rows are returned regardless of their enabled/active flags; deciding
        on those is the matcher's job. Rows with unparsable documents are
        skipped with a warning.
        """
        async with self._session_factory() as db:
            sub_rows = (await db.scalars(
                select(EventSubscription)
                .where(
                    EventSubscription.event_type == event_type.value,
                    EventSubscription.platform == platform.value,
                )
                .order_by(EventSubscription.workspace_id)
            )).all()

            workspace_ids = sorted({s.workspace_id for s in sub_rows})
            if not workspace_ids:
                return RegistrySnapshot()

            integration_rows = (await db.scalars(
                select(PlatformIntegration).where(
                    PlatformIntegration.workspace_id.in_(workspace_ids),
                    PlatformIntegration.platform == platform.value,
                )
            )).all()
            workspace_rows = (await db.scalars(
                select(Workspace).where(Workspace.workspace_id.in_(workspace_ids))
            )).all()
            rule_rows = (await db.scalars(
                select(AutomationRule)
                .where(
                    AutomationRule.workspace_id.in_(workspace_ids),
                    AutomationRule.event_type == event_type.value,
                )
                .order_by(AutomationRule.workspace_id, AutomationRule.id)
            )).all()

        subscriptions: list[SubscriptionSnapshot] = []
        for row in sub_rows:
            try:
                filters = parse_condition(row.filters)
            except InvalidRuleError as e:
                logger.warning(
                    "subscription_filter_invalid",
                    workspace_id=row.workspace_id,
                    event_type=row.event_type,
                    platform=row.platform,
                    error=str(e),
                )
                continue
            subscriptions.append(SubscriptionSnapshot(
                workspace_id=row.workspace_id,
                event_type=event_type,
                platform=platform,
                enabled=row.enabled,
                filters=filters,
            ))

        rules: dict[str, list[RuleSnapshot]] = {}
        for row in rule_rows:
            try:
                rules.setdefault(row.workspace_id, []).append(rule_snapshot(row))
            except InvalidRuleError as e:
                logger.warning(
                    "automation_rule_invalid",
                    workspace_id=row.workspace_id,
                    rule_name=row.rule_name,
                    error=str(e),
                )

        return RegistrySnapshot(
            subscriptions=tuple(subscriptions),
            integrations={(r.workspace_id, Platform(r.platform)): integration_snapshot(r) for r in integration_rows},
            workspaces={r.workspace_id: workspace_snapshot(r) for r in workspace_rows},
            rules={ws: tuple(rs) for ws, rs in rules.items()},
        )

    async def get_workspace(self, workspace_id: str) -> WorkspaceSnapshot | None:
        async with self._session_factory() as db:
            row = await db.scalar(select(Workspace).where(Workspace.workspace_id == workspace_id))
        return workspace_snapshot(row) if row is not None else None

    async def list_workspaces(self, active_only: bool = True) -> list[WorkspaceSnapshot]:
        stmt = select(Workspace).order_by(Workspace.workspace_id)
        if active_only:
            stmt = stmt.where(Workspace.active.is_(True))
        async with self._session_factory() as db:
            rows = (await db.scalars(stmt)).all()
        return [workspace_snapshot(r) for r in rows]

    async def integrations_for(self, workspace_id: str) -> dict[Platform, IntegrationSnapshot]:
        async with self._session_factory() as db:
            rows = (await db.scalars(
                select(PlatformIntegration).where(PlatformIntegration.workspace_id == workspace_id)
            )).all()
        return {Platform(r.platform): integration_snapshot(r) for r in rows}

    async def active_workspaces_summary(self) -> list[dict[str, Any]]:
        """Active workspaces with their enabled integration and subscription counts."""
        integrations = (
            select(
                PlatformIntegration.workspace_id,
                func.count(func.distinct(PlatformIntegration.platform)).label("n"),
            )
            .where(PlatformIntegration.enabled.is_(True))
            .group_by(PlatformIntegration.workspace_id)
            .subquery()
        )
        subscriptions = (
            select(
                EventSubscription.workspace_id,
                func.count(func.distinct(EventSubscription.event_type)).label("n"),
            )
            .where(EventSubscription.enabled.is_(True))
            .group_by(EventSubscription.workspace_id)
            .subquery()
        )
        stmt = (
            select(
                Workspace,
                func.coalesce(integrations.c.n, 0).label("active_integrations"),
                func.coalesce(subscriptions.c.n, 0).label("active_subscriptions"),
            )
            .outerjoin(integrations, integrations.c.workspace_id == Workspace.workspace_id)
            .outerjoin(subscriptions, subscriptions.c.workspace_id == Workspace.workspace_id)
            .where(Workspace.active.is_(True))
            .order_by(Workspace.workspace_id)
        )
        async with self._session_factory() as db:
            rows = (await db.execute(stmt)).all()
        return [
            {
                "workspace_id": ws.workspace_id,
                "name": ws.name,
                "user_id": ws.user_id,
                "frameworks": list(ws.frameworks or ()),
                "jurisdiction": ws.jurisdiction,
                "module_count": len(ws.modules or ()),
                "github_repo": ws.github_repo,
                "active_integrations": n_integrations,
                "active_subscriptions": n_subscriptions,
            }
            for ws, n_integrations, n_subscriptions in rows
        ]
