"""Typed action AST for ``automation_rules.actions``.

Each action is an opaque unit of work for the engine; the two kinds cover
everything a rule can do:

    {"type": "emit_event", "event_type": "SCAN_REQUESTED", "platform": "scan",
     "payload": {"reason": "gdpr_update"}, "copy_fields": ["jurisdiction"]}

    {"type": "invoke_platform", "platform": "code", "operation": "/specs/generate",
     "params": {"template": "dpia"}}

Optional on both: ``name``, ``stage`` (consecutive actions sharing a stage run
concurrently; default is the list index, i.e. sequential; stages never
decrease along the list), ``timeout_s`` and ``max_retries`` (override the
engine defaults).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from eventid.errors import InvalidRuleError
from eventid.schema.events import EventType, Platform


class ActionKind(str, Enum):
    EMIT_EVENT = "emit_event"
    INVOKE_PLATFORM = "invoke_platform"


@dataclass(frozen=True, kw_only=True)
class Action:
    name: str
    stage: int
    # position in the rule's action list
    index: int = 0
    timeout_s: float | None = None
    max_retries: int | None = None

    @property
    def kind(self) -> ActionKind:
        raise NotImplementedError


@dataclass(frozen=True, kw_only=True)
class EmitEventAction(Action):
    """Publish a follow-up event onto the broker."""

    event_type: EventType
    platform: Platform
    payload: dict[str, Any] = field(default_factory=dict)
    copy_fields: tuple[str, ...] = ()

    @property
    def kind(self) -> ActionKind:
        return ActionKind.EMIT_EVENT


@dataclass(frozen=True, kw_only=True)
class InvokePlatformAction(Action):
    """POST to a downstream platform through the workspace's integration endpoint."""

    platform: Platform
    operation: str
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> ActionKind:
        return ActionKind.INVOKE_PLATFORM


def parse_actions(document: Any) -> tuple[Action, ...]:
    """Parse an action list; raises InvalidRuleError if any entry is malformed."""
    if not isinstance(document, list):
        raise InvalidRuleError("actions must be a list")
    if not document:
        raise InvalidRuleError("a rule needs at least one action")
    actions = tuple(_parse_action(index, entry) for index, entry in enumerate(document))
    for previous, action in zip(actions, actions[1:]):
        if action.stage < previous.stage:
            raise InvalidRuleError(
                f"action #{action.index}: stage {action.stage} comes after stage {previous.stage}; "
                "stages must not decrease in list order"
            )
    return actions


def _parse_action(index: int, entry: Any) -> Action:
    if not isinstance(entry, dict):
        raise InvalidRuleError(f"action #{index} must be an object")
    try:
        kind = ActionKind(entry.get("type"))
    except ValueError as e:
        raise InvalidRuleError(f"action #{index} has unknown type '{entry.get('type')}'") from e

    common = {
        "index": index,
        "stage": _int_field(entry, "stage", index, default=index),
        "timeout_s": _positive_float(entry, "timeout_s", index),
        "max_retries": _int_field(entry, "max_retries", index, default=None),
    }

    try:
        if kind is ActionKind.EMIT_EVENT:
            event_type = EventType(entry.get("event_type"))
            platform = Platform(entry.get("platform"))
            return EmitEventAction(
                name=entry.get("name") or f"emit:{event_type.value}",
                event_type=event_type,
                platform=platform,
                payload=_object_field(entry, "payload", index),
                copy_fields=tuple(entry.get("copy_fields") or ()),
                **common,
            )
        platform = Platform(entry.get("platform"))
        operation = entry.get("operation")
        if not isinstance(operation, str) or not operation:
            raise InvalidRuleError(f"action #{index} needs an 'operation'")
        return InvokePlatformAction(
            name=entry.get("name") or f"invoke:{platform.value}{_normalize(operation)}",
            platform=platform,
            operation=_normalize(operation),
            params=_object_field(entry, "params", index),
            **common,
        )
    except ValueError as e:
        raise InvalidRuleError(f"action #{index}: {e}") from e


def _normalize(operation: str) -> str:
    return operation if operation.startswith("/") else f"/{operation}"


def _object_field(entry: dict[str, Any], key: str, index: int) -> dict[str, Any]:
    value = entry.get(key) or {}
    if not isinstance(value, dict):
        raise InvalidRuleError(f"action #{index}: '{key}' must be an object")
    return value


def _int_field(entry: dict[str, Any], key: str, index: int, default: int | None) -> int | None:
    value = entry.get(key, default)
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise InvalidRuleError(f"action #{index}: '{key}' must be a non-negative integer")
    return value


def _positive_float(entry: dict[str, Any], key: str, index: int) -> float | None:
    value = entry.get(key)
    if value is None:
        return None
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
        raise InvalidRuleError(f"action #{index}: '{key}' must be a positive number")
    return float(value)
