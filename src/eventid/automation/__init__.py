"""Condition and action documents for subscriptions and automation rules.

The matcher lives in ``eventid.automation.matcher`` and is imported from
there directly; it depends on the registry, which in turn parses the
documents defined here.
"""

from eventid.automation.actions import Action, ActionKind, EmitEventAction, InvokePlatformAction, parse_actions
from eventid.automation.conditions import Condition, EvalContext, parse_condition

__all__ = [
    "Action",
    "ActionKind",
    "Condition",
    "EmitEventAction",
    "EvalContext",
    "InvokePlatformAction",
    "parse_actions",
    "parse_condition",
]
