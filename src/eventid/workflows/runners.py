"""Execution of single workflow actions.

The engine owns timeouts, retries and step bookkeeping; a runner performs
exactly one attempt of one action and either returns a JSON-serializable
output dict or raises.

  emit_event       build a follow-up envelope and publish it to the broker;
                   it re-enters the pipeline like any other event
  invoke_platform  POST to ``<integration endpoint><operation>`` with httpx
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from eventid.automation.actions import Action, EmitEventAction, InvokePlatformAction
from eventid.broker.log import EventPublisher
from eventid.errors import ActionError, EmitDepthExceededError, PlatformNotConfiguredError
from eventid.registry.workspaces import IntegrationSnapshot
from eventid.schema.events import EventEnvelope, Platform, new_event_id, resolve_path

logger = structlog.get_logger()

_MAX_BODY_CHARS = 2000


@dataclass
class ActionContext:
    """Everything an action may read about the run it belongs to."""

    event: EventEnvelope
    workspace_id: str
    rule_name: str
    workflow_id: str
    correlation_id: str
    integrations: dict[Platform, IntegrationSnapshot] = field(default_factory=dict)
    # event_id reserved per emit action index, reused across its retries
    event_ids: dict[int, str] = field(default_factory=dict)


def _assign(document: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = document
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


class ActionRunner:
    """Dispatches an action to the emit or invoke implementation."""

    def __init__(
        self,
        publisher: EventPublisher,
        http: httpx.AsyncClient,
        max_emit_depth: int = 5,
    ) -> None:
        self._publisher = publisher
        self._http = http
        self._max_emit_depth = max_emit_depth

    async def run(self, action: Action, ctx: ActionContext) -> dict[str, Any]:
        if isinstance(action, EmitEventAction):
            return await self._emit(action, ctx)
        if isinstance(action, InvokePlatformAction):
            return await self._invoke(action, ctx)
        raise ActionError(f"unsupported action type: {type(action).__name__}")

    # ------------------------------------------------------------------
    # emit_event
    # ------------------------------------------------------------------

    def build_follow_up(self, action: EmitEventAction, ctx: ActionContext) -> EventEnvelope:
        """Derive the follow-up envelope for *action* from the triggering event."""
        depth = ctx.event.causation_depth + 1
        if depth > self._max_emit_depth:
            raise EmitDepthExceededError(
                f"emitting {action.event_type.value} would reach causation depth {depth} "
                f"(max {self._max_emit_depth})"
            )

        data: dict[str, Any] = {"workspace_id": ctx.workspace_id}
        for path in action.copy_fields:
            value = resolve_path(ctx.event.event_data, path)
            if value is not None:
                _assign(data, path, value)
        data.update(action.payload)
        data["causation"] = {
            "event_id": ctx.event.event_id,
            "depth": depth,
            "workflow_id": ctx.workflow_id,
            "rule_name": ctx.rule_name,
        }

        event_id = ctx.event_ids.setdefault(action.index, new_event_id())
        return EventEnvelope(
            event_id=event_id,
            event_type=action.event_type,
            platform=action.platform,
            correlation_id=ctx.correlation_id,
            user_id=ctx.event.user_id,
            event_data=data,
        )

    async def _emit(self, action: EmitEventAction, ctx: ActionContext) -> dict[str, Any]:
        envelope = self.build_follow_up(action, ctx)
        message = await self._publisher.publish(envelope)
        return {
            "event_id": envelope.event_id,
            "event_type": envelope.event_type.value,
            "correlation_id": envelope.correlation_id,
            "partition": message.partition,
            "offset": message.offset,
        }

    # ------------------------------------------------------------------
    # invoke_platform
    # ------------------------------------------------------------------

    async def _invoke(self, action: InvokePlatformAction, ctx: ActionContext) -> dict[str, Any]:
        integration = ctx.integrations.get(action.platform)
        if integration is None or not integration.enabled:
            raise PlatformNotConfiguredError(
                f"workspace {ctx.workspace_id} has no enabled {action.platform.value} integration"
            )
        endpoint = integration.configuration.get("endpoint")
        if not endpoint:
            raise PlatformNotConfiguredError(
                f"{action.platform.value} integration of {ctx.workspace_id} has no endpoint"
            )

        url = f"{str(endpoint).rstrip('/')}{action.operation}"
        headers = {"X-Correlation-ID": ctx.correlation_id, "X-Workflow-ID": ctx.workflow_id}
        headers.update(integration.configuration.get("headers") or {})
        payload = {
            "workflow_id": ctx.workflow_id,
            "workspace_id": ctx.workspace_id,
            "rule_name": ctx.rule_name,
            "trigger_event": ctx.event.model_dump(mode="json"),
            "params": action.params,
        }

        try:
            resp = await self._http.post(url, json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "platform_invoke_http_error",
                platform=action.platform.value,
                url=url,
                status=e.response.status_code,
                body=e.response.text[:500],
            )
            error = ActionError(f"HTTP {e.response.status_code} from {url}")
            # Client errors will not improve on retry.
            error.retryable = e.response.status_code >= 500 or e.response.status_code == 429
            raise error from e
        except httpx.TransportError as e:
            raise ActionError(f"{type(e).__name__} calling {url}: {e}") from e

        try:
            body: Any = resp.json()
        except ValueError:
            body = resp.text[:_MAX_BODY_CHARS]
        return {"url": url, "status_code": resp.status_code, "body": body}
