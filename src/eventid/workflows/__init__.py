"""Workflow engine and action runners."""

from eventid.workflows.engine import WorkflowEngine, workflow_id_for
from eventid.workflows.runners import ActionContext, ActionRunner

__all__ = ["ActionContext", "ActionRunner", "WorkflowEngine", "workflow_id_for"]
