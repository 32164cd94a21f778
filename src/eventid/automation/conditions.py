"""Typed predicate AST for subscription filters and rule conditions.

Condition documents are stored as JSON on ``event_subscriptions.filters`` and
``automation_rules.conditions`` and parsed once per registry snapshot into
the frozen dataclasses below. Evaluation is a pure function of the event and
the workspace it is evaluated for, so matching is deterministic and testable
without touching any downstream platform.

Grammar
-------
    {}                                              always true
    {"all": [c, ...]}  {"any": [c, ...]}  {"not": c}
    {"field": "jurisdiction.region", "op": "eq", "value": "EU"}
        ops: eq, ne, in, not_in, contains, exists, gte, lte
    {"severity_at_least": "HIGH"}                   risk_context.change_severity
    {"framework_in_workspace": true}                jurisdiction.framework ∈ workspace.frameworks
    {"jurisdiction_matches_workspace": true}        jurisdiction.region == workspace.jurisdiction
    {"module_in_workspace": "scan.module"}          payload value ∈ workspace.modules
    {"frameworks": [...]} {"regions": [...]} {"severities": [...]}

An object with several keys is an implicit ``all``. Paths starting with
``event.`` address envelope fields (``event.user_id``, ``event.platform``).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from eventid.errors import InvalidRuleError
from eventid.schema.events import EventEnvelope, Severity

if TYPE_CHECKING:
    from eventid.registry.workspaces import WorkspaceSnapshot


@dataclass(frozen=True)
class EvalContext:
    event: EventEnvelope
    workspace: WorkspaceSnapshot | None = None


class Condition(ABC):
    @abstractmethod
    def evaluate(self, ctx: EvalContext) -> bool: ...


class Op(str, Enum):
    EQ = "eq"
    NE = "ne"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    EXISTS = "exists"
    GTE = "gte"
    LTE = "lte"


# ═══════════════════════════════════════════════════════════════════════════════
# NODES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Always(Condition):
    def evaluate(self, ctx: EvalContext) -> bool:
        return True


@dataclass(frozen=True)
class AllOf(Condition):
    children: tuple[Condition, ...]

    def evaluate(self, ctx: EvalContext) -> bool:
        return all(c.evaluate(ctx) for c in self.children)


@dataclass(frozen=True)
class AnyOf(Condition):
    children: tuple[Condition, ...]

    def evaluate(self, ctx: EvalContext) -> bool:
        return any(c.evaluate(ctx) for c in self.children)


@dataclass(frozen=True)
class Not(Condition):
    child: Condition

    def evaluate(self, ctx: EvalContext) -> bool:
        return not self.child.evaluate(ctx)


@dataclass(frozen=True)
class FieldTest(Condition):
    path: str
    op: Op
    value: Any = None

    def evaluate(self, ctx: EvalContext) -> bool:
        actual = ctx.event.get(self.path)
        if self.op is Op.EXISTS:
            expected = True if self.value is None else bool(self.value)
            return (actual is not None) is expected
        if actual is None:
            return self.op in (Op.NE, Op.NOT_IN)
        if self.op is Op.EQ:
            return actual == self.value
        if self.op is Op.NE:
            return actual != self.value
        if self.op is Op.IN:
            return _overlaps(actual, self.value)
        if self.op is Op.NOT_IN:
            return not _overlaps(actual, self.value)
        if self.op is Op.CONTAINS:
            if isinstance(actual, (list, tuple, set, str)):
                return self.value in actual
            return False
        if self.op in (Op.GTE, Op.LTE):
            if not _is_number(actual) or not _is_number(self.value):
                return False
            return actual >= self.value if self.op is Op.GTE else actual <= self.value
        return False


@dataclass(frozen=True)
class SeverityAtLeast(Condition):
    level: Severity

    def evaluate(self, ctx: EvalContext) -> bool:
        severity = ctx.event.severity
        return severity is not None and severity.rank >= self.level.rank


@dataclass(frozen=True)
class FrameworkInWorkspace(Condition):
    def evaluate(self, ctx: EvalContext) -> bool:
        framework = ctx.event.framework
        if framework is None or ctx.workspace is None:
            return False
        return str(framework).upper() in {f.upper() for f in ctx.workspace.frameworks}


@dataclass(frozen=True)
class JurisdictionMatchesWorkspace(Condition):
    def evaluate(self, ctx: EvalContext) -> bool:
        region = ctx.event.region
        if region is None or ctx.workspace is None:
            return False
        return str(region).upper() == ctx.workspace.jurisdiction.upper()


@dataclass(frozen=True)
class ModuleInWorkspace(Condition):
    path: str

    def evaluate(self, ctx: EvalContext) -> bool:
        value = ctx.event.get(self.path)
        if value is None or ctx.workspace is None:
            return False
        modules = {m.upper() for m in ctx.workspace.modules}
        values = value if isinstance(value, list) else [value]
        return any(str(v).upper() in modules for v in values)


def _overlaps(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple, set)):
        expected = [expected]
    if isinstance(actual, (list, tuple, set)):
        return any(a in expected for a in actual)
    return actual in expected


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ═══════════════════════════════════════════════════════════════════════════════
# PARSING
# ═══════════════════════════════════════════════════════════════════════════════

_CANONICAL_PATHS = {
    "frameworks": "jurisdiction.framework",
    "regions": "jurisdiction.region",
    "severities": "risk_context.change_severity",
}


def parse_condition(document: Any) -> Condition:
    """Parse a JSON condition document; raises InvalidRuleError if malformed."""
    if document is None:
        return Always()
    if not isinstance(document, dict):
        raise InvalidRuleError(f"condition must be an object, got {type(document).__name__}")

    parts: list[Condition] = []
    keys = set(document)

    if "field" in keys:
        parts.append(_parse_field_test(document))
        keys -= {"field", "op", "value"}
    elif keys & {"op", "value"}:
        raise InvalidRuleError("'op'/'value' given without 'field'")

    for key in sorted(keys):
        value = document[key]
        if key == "all":
            parts.append(AllOf(tuple(parse_condition(c) for c in _as_list(key, value))))
        elif key == "any":
            parts.append(AnyOf(tuple(parse_condition(c) for c in _as_list(key, value))))
        elif key == "not":
            parts.append(Not(parse_condition(value)))
        elif key == "severity_at_least":
            parts.append(SeverityAtLeast(_parse_severity(value)))
        elif key == "framework_in_workspace":
            if value:
                parts.append(FrameworkInWorkspace())
        elif key == "jurisdiction_matches_workspace":
            if value:
                parts.append(JurisdictionMatchesWorkspace())
        elif key == "module_in_workspace":
            if not isinstance(value, str) or not value:
                raise InvalidRuleError("'module_in_workspace' expects a payload path")
            parts.append(ModuleInWorkspace(value))
        elif key in _CANONICAL_PATHS:
            values = _as_list(key, value)
            if key == "severities":
                values = [str(v).upper() for v in values]
            parts.append(FieldTest(_CANONICAL_PATHS[key], Op.IN, tuple(values)))
        else:
            raise InvalidRuleError(f"unknown condition key '{key}'")

    if not parts:
        return Always()
    if len(parts) == 1:
        return parts[0]
    return AllOf(tuple(parts))


def _parse_field_test(document: dict[str, Any]) -> FieldTest:
    path = document.get("field")
    if not isinstance(path, str) or not path:
        raise InvalidRuleError("'field' must be a non-empty dotted path")
    try:
        op = Op(document.get("op", "eq"))
    except ValueError as e:
        raise InvalidRuleError(f"unknown operator '{document.get('op')}'") from e
    value = document.get("value")
    if op in (Op.IN, Op.NOT_IN):
        value = tuple(_as_list("value", value))
    elif op is not Op.EXISTS and "value" not in document:
        raise InvalidRuleError(f"operator '{op.value}' requires a 'value'")
    return FieldTest(path, op, value)


def _parse_severity(value: Any) -> Severity:
    try:
        return Severity(str(value).upper())
    except ValueError as e:
        raise InvalidRuleError(f"unknown severity '{value}'") from e


def _as_list(key: str, value: Any) -> list[Any]:
    if not isinstance(value, (list, tuple)):
        raise InvalidRuleError(f"'{key}' expects a list")
    return list(value)
