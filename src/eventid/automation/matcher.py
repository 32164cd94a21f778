"""Event → (workspace, rule) matching.

For an event of type T from platform P a workspace reacts when, in order:

  1. it has an enabled subscription for (T, P)
  2. its integration for P exists and is enabled
  3. the workspace is active
  4. the subscription filters accept the event
  5. one or more of its enabled rules for T have conditions that accept the event

Matches are ordered by descending priority, then ascending rule_name, then
ascending workspace_id, so redelivery of the same event against the same
registry state reproduces the same list.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from eventid.automation.conditions import EvalContext
from eventid.registry.workspaces import RegistrySnapshot, RuleSnapshot, WorkspaceRegistry
from eventid.schema.events import EventEnvelope

logger = structlog.get_logger()


@dataclass(frozen=True)
class RuleMatch:
    workspace_id: str
    rule: RuleSnapshot

    @property
    def sort_key(self) -> tuple[int, str, str]:
        return (-self.rule.priority, self.rule.rule_name, self.workspace_id)


def match_snapshot(event: EventEnvelope, snapshot: RegistrySnapshot) -> list[RuleMatch]:
    """Pure matching over an already-loaded registry snapshot."""
    matches: list[RuleMatch] = []

    for subscription in snapshot.subscriptions:
        ws_id = subscription.workspace_id
        if not subscription.enabled:
            continue
        if subscription.event_type != event.event_type or subscription.platform != event.platform:
            continue

        integration = snapshot.integrations.get((ws_id, event.platform))
        if integration is None or not integration.enabled:
            continue

        workspace = snapshot.workspaces.get(ws_id)
        if workspace is None or not workspace.active:
            continue

        ctx = EvalContext(event=event, workspace=workspace)
        if not subscription.filters.evaluate(ctx):
            continue

        for rule in snapshot.rules.get(ws_id, ()):
            if not rule.enabled or rule.event_type != event.event_type:
                continue
            if rule.conditions.evaluate(ctx):
                matches.append(RuleMatch(workspace_id=ws_id, rule=rule))

    matches.sort(key=lambda m: m.sort_key)
    return matches


class WorkspaceMatcher:
    """Computes which (workspace, rule) pairs must react to an event."""

    def __init__(self, registry: WorkspaceRegistry) -> None:
        self._registry = registry

    async def match(self, event: EventEnvelope) -> list[RuleMatch]:
        snapshot = await self._registry.snapshot_for(event.event_type, event.platform)
        matches = match_snapshot(event, snapshot)
        logger.info(
            "event_matched",
            event_id=event.event_id,
            event_type=event.event_type.value,
            platform=event.platform.value,
            subscriptions=len(snapshot.subscriptions),
            matches=[f"{m.workspace_id}/{m.rule.rule_name}" for m in matches],
        )
        return matches
