"""Workflow execution for matched (workspace, rule) pairs.

A run is identified by (trigger_event_id, workspace_id, rule_name) and has a
deterministic workflow_id derived from that key, so creating it twice (event
redelivery, concurrent consumers) yields one row. Lifecycle:

    started ──► in_progress ──► completed
       │             │
       └─────────────┴────────► failed

Every transition is a guarded UPDATE (``WHERE status IN (<predecessors>)``);
a run that already moved on is never moved back.

Actions run in list order. Consecutive actions sharing a stage run
concurrently and every action runs even after another failed. Steps are
appended in list order and saved after each stage.

An open run found on redelivery with no execution owning it in this process
was interrupted (crash, lost lease, shutdown) and is failed as such.
"""

from __future__ import annotations

import asyncio
import itertools
import time
import uuid
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventid.automation.actions import Action, EmitEventAction
from eventid.automation.matcher import RuleMatch
from eventid.db.models import StepOutcome, WorkflowRun, WorkflowStatus
from eventid.db.session import session_scope
from eventid.errors import (
    ActionTimeoutError,
    TransientStorageError,
    WorkflowCancelledError,
    WorkflowInterruptedError,
    classify_error,
    is_retryable,
)
from eventid.observability.metrics import MetricsCollector
from eventid.registry.workspaces import WorkspaceRegistry
from eventid.schema.events import EventEnvelope, new_correlation_id
from eventid.store.event_store import translate_db_error
from eventid.workflows.runners import ActionContext, ActionRunner

logger = structlog.get_logger()

WORKFLOW_NAMESPACE = uuid.UUID("6f1c8f3e-2b7a-4d0e-9a51-3c8e7d2b9f10")
WORKFLOW_TYPE = "automation"

_OPEN_STATES = (WorkflowStatus.STARTED.value, WorkflowStatus.IN_PROGRESS.value)


def workflow_id_for(trigger_event_id: str, workspace_id: str, rule_name: str) -> str:
    """Deterministic workflow id for one (event, workspace, rule) triple."""
    return str(uuid.uuid5(WORKFLOW_NAMESPACE, f"{trigger_event_id}:{workspace_id}:{rule_name}"))


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowEngine:
    """Creates, runs and finalizes workflow runs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: WorkspaceRegistry,
        runner: ActionRunner,
        metrics: MetricsCollector,
        action_timeout_s: float = 30.0,
        action_max_retries: int = 3,
        retry_delay_s: float = 1.0,
        retry_max_delay_s: float = 30.0,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._runner = runner
        self._metrics = metrics
        self._action_timeout_s = action_timeout_s
        self._action_max_retries = action_max_retries
        self._retry_delay_s = retry_delay_s
        self._retry_max_delay_s = retry_max_delay_s

        self._tasks: dict[str, asyncio.Task[bool]] = {}
        self._cancel_reasons: dict[str, str] = {}
        # execute() calls in flight per workflow_id in this process
        self._inflight: dict[str, int] = {}

    # ═══════════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════════

    async def execute(self, event: EventEnvelope, match: RuleMatch) -> WorkflowRun:
        """Run *match*'s rule for *event* once; returns the run as persisted."""
        workflow_id = workflow_id_for(event.event_id, match.workspace_id, match.rule.rule_name)
        self._inflight[workflow_id] = self._inflight.get(workflow_id, 0) + 1
        try:
            return await self._execute(workflow_id, event, match)
        except DBAPIError as e:
            translated = translate_db_error(e)
            if translated is e:
                raise
            raise translated from e
        finally:
            remaining = self._inflight[workflow_id] - 1
            if remaining:
                self._inflight[workflow_id] = remaining
            else:
                del self._inflight[workflow_id]

    async def execute_all(self, event: EventEnvelope, matches: list[RuleMatch]) -> list[WorkflowRun]:
        """Execute every match in order, isolating failures between runs.

        A transient storage failure is re-raised once all runs were attempted,
        so the message gets redelivered; runs that already exist are then
        returned unchanged.
        """
        runs: list[WorkflowRun] = []
        transient: TransientStorageError | None = None
        for match in matches:
            try:
                runs.append(await self.execute(event, match))
            except TransientStorageError as e:
                logger.warning(
                    "workflow_storage_unavailable",
                    event_id=event.event_id,
                    workspace_id=match.workspace_id,
                    rule_name=match.rule.rule_name,
                    error=str(e),
                )
                transient = transient or e
            except Exception as e:
                kind = classify_error(e)
                logger.exception(
                    "workflow_execution_error",
                    event_id=event.event_id,
                    workspace_id=match.workspace_id,
                    rule_name=match.rule.rule_name,
                    error_kind=kind,
                )
                await self._metrics.error(kind)
        if transient is not None:
            raise transient
        return runs

    async def cancel(self, workflow_id: str, reason: str) -> bool:
        """Force a non-terminal run to ``failed``.

        In-flight actions of a run executing in this process are cancelled;
        actions that already ran are not rolled back. Returns False when the
        run is unknown or already terminal.
        """
        task = self._tasks.get(workflow_id)
        if task is not None and not task.done():
            self._cancel_reasons[workflow_id] = reason
            task.cancel()
            logger.info("workflow_cancel_requested", workflow_id=workflow_id, reason=reason)
            return True

        moved = await self._transition(
            workflow_id,
            WorkflowStatus.FAILED,
            completed_at=_now(),
            error_message=str(WorkflowCancelledError(f"cancelled: {reason}")),
        )
        if moved:
            await self._metrics.workflow_finished(WorkflowStatus.FAILED.value)
            logger.info("workflow_cancelled", workflow_id=workflow_id, reason=reason)
        return moved

    async def get_run(self, workflow_id: str) -> WorkflowRun | None:
        async with self._session_factory() as db:
            return await db.scalar(select(WorkflowRun).where(WorkflowRun.workflow_id == workflow_id))

    async def runs_for_event(self, event_id: str) -> list[WorkflowRun]:
        async with self._session_factory() as db:
            rows = await db.scalars(
                select(WorkflowRun)
                .where(WorkflowRun.trigger_event_id == event_id)
                .order_by(WorkflowRun.id)
            )
            return list(rows.all())

    # ═══════════════════════════════════════════════════════════════════════
    # EXECUTION
    # ═══════════════════════════════════════════════════════════════════════

    async def _execute(self, workflow_id: str, event: EventEnvelope, match: RuleMatch) -> WorkflowRun:
        rule = match.rule
        log = logger.bind(
            workflow_id=workflow_id,
            event_id=event.event_id,
            workspace_id=match.workspace_id,
            rule_name=rule.rule_name,
        )

        if not await self._create_run(workflow_id, event, match):
            existing = await self.get_run(workflow_id)
            log.info("workflow_run_exists", status=existing.status if existing else None)
            if existing is None:
                raise TransientStorageError(f"workflow run {workflow_id} vanished after conflict")
            if existing.status in _OPEN_STATES and self._inflight.get(workflow_id, 0) == 1:
                return await self._recover(existing, log)
            return existing

        if not await self._transition(workflow_id, WorkflowStatus.IN_PROGRESS):
            log.info("workflow_not_started")
            return await self._require_run(workflow_id)

        ctx = ActionContext(
            event=event,
            workspace_id=match.workspace_id,
            rule_name=rule.rule_name,
            workflow_id=workflow_id,
            correlation_id=event.correlation_id or new_correlation_id(),
        )
        steps: list[dict[str, Any]] = []

        # Registered before any await so cancel() always finds it.
        task = asyncio.create_task(self._run_workflow(rule.actions, ctx, steps))
        self._tasks[workflow_id] = task
        try:
            ran = await task
        except asyncio.CancelledError:
            reason = self._cancel_reasons.pop(workflow_id, None)
            if reason is None:
                # Shutdown: the run stays in_progress until a redelivery recovers it.
                raise
            cancelled = WorkflowCancelledError(f"cancelled: {reason}")
            await self._finish(workflow_id, WorkflowStatus.FAILED, steps, str(cancelled))
            log.warning("workflow_cancelled", reason=reason, error_kind=cancelled.kind, steps=len(steps))
            return await self._require_run(workflow_id)
        finally:
            self._tasks.pop(workflow_id, None)
        self._cancel_reasons.pop(workflow_id, None)

        if not ran:
            log.warning("workflow_run_superseded", steps=len(steps))
            return await self._require_run(workflow_id)

        failed = [s for s in steps if s["status"] == StepOutcome.FAILED.value]
        if failed:
            first = failed[0]
            error_message = f"action '{first['name']}' failed: {first['error']}"
            status = WorkflowStatus.FAILED
        else:
            error_message = None
            status = WorkflowStatus.COMPLETED

        await self._finish(workflow_id, status, steps, error_message)
        log.info(
            "workflow_finished",
            status=status.value,
            actions=len(steps),
            failed=len(failed),
            error_message=error_message,
        )
        return await self._require_run(workflow_id)

    async def _recover(self, run: WorkflowRun, log: Any) -> WorkflowRun:
        """Fail an open run that no execution in this process owns."""
        interrupted = WorkflowInterruptedError(
            f"interrupted: run left {run.status} after {len(run.steps or [])} step(s)"
        )
        if await self._transition(
            run.workflow_id,
            WorkflowStatus.FAILED,
            completed_at=_now(),
            error_message=str(interrupted),
        ):
            await self._metrics.workflow_finished(WorkflowStatus.FAILED.value)
            log.warning("workflow_recovered", previous_status=run.status, error_kind=interrupted.kind)
        return await self._require_run(run.workflow_id)

    async def _run_workflow(
        self, actions: tuple[Action, ...], ctx: ActionContext, steps: list[dict[str, Any]]
    ) -> bool:
        """Run every stage; False when the run was finalized elsewhere meanwhile."""
        ctx.integrations = await self._registry.integrations_for(ctx.workspace_id)
        run = await self.get_run(ctx.workflow_id)
        if run is None or run.status != WorkflowStatus.IN_PROGRESS.value:
            return False

        for _, group in itertools.groupby(enumerate(actions), key=lambda item: item[1].stage):
            finished: list[dict[str, Any]] = []
            try:
                await asyncio.gather(*(self._run_action(i, a, ctx, finished) for i, a in group))
            finally:
                steps.extend(sorted(finished, key=lambda s: s["index"]))
            if not await self._save_steps(ctx.workflow_id, steps):
                return False
        return True

    async def _run_action(
        self, index: int, action: Action, ctx: ActionContext, steps: list[dict[str, Any]]
    ) -> None:
        """Run one action to a final outcome, retrying with backoff. Never raises
        except on cancellation."""
        timeout_s = action.timeout_s or self._action_timeout_s
        max_retries = action.max_retries if action.max_retries is not None else self._action_max_retries
        started_at = _now()
        t0 = time.monotonic()
        attempts = 0
        output: dict[str, Any] | None = None
        error: BaseException | None = None

        while True:
            attempts += 1
            try:
                output = await asyncio.wait_for(self._runner.run(action, ctx), timeout=timeout_s)
                error = None
                break
            except asyncio.TimeoutError:
                error = ActionTimeoutError(action.name, timeout_s)
            except asyncio.CancelledError:
                steps.append(self._step(
                    index, action, StepOutcome.FAILED, attempts, started_at, t0,
                    error="cancelled", error_kind=WorkflowCancelledError.kind,
                ))
                raise
            except Exception as e:
                error = e

            logger.warning(
                "workflow_action_attempt_failed",
                workflow_id=ctx.workflow_id,
                action=action.name,
                attempt=attempts,
                error=str(error),
                error_kind=classify_error(error),
            )
            if attempts > max_retries or not is_retryable(error):
                break
            delay = min(self._retry_delay_s * 2 ** (attempts - 1), self._retry_max_delay_s)
            await asyncio.sleep(delay)

        if error is None:
            outcome = StepOutcome.SUCCEEDED if attempts == 1 else StepOutcome.RETRIED_SUCCEEDED
            step = self._step(index, action, outcome, attempts, started_at, t0, output=output)
            if isinstance(action, EmitEventAction):
                await self._metrics.event_emitted()
        else:
            outcome = StepOutcome.FAILED
            step = self._step(
                index, action, outcome, attempts, started_at, t0,
                error=str(error), error_kind=classify_error(error),
            )
        steps.append(step)
        await self._metrics.action_finished(outcome.value, step["duration_ms"])

    @staticmethod
    def _step(
        index: int,
        action: Action,
        outcome: StepOutcome,
        attempts: int,
        started_at: datetime,
        t0: float,
        output: dict[str, Any] | None = None,
        error: str | None = None,
        error_kind: str | None = None,
    ) -> dict[str, Any]:
        return {
            "index": index,
            "action": action.kind.value,
            "name": action.name,
            "stage": action.stage,
            "status": outcome.value,
            "attempts": attempts,
            "error": error,
            "error_kind": error_kind,
            "output": output,
            "started_at": started_at.isoformat(),
            "finished_at": _now().isoformat(),
            "duration_ms": round((time.monotonic() - t0) * 1000, 2),
        }

    # ═══════════════════════════════════════════════════════════════════════
    # PERSISTENCE
    # ═══════════════════════════════════════════════════════════════════════

    async def _create_run(self, workflow_id: str, event: EventEnvelope, match: RuleMatch) -> bool:
        """Insert-or-ignore on the workflow key; True when this call created the run."""
        values = {
            "workflow_id": workflow_id,
            "workspace_id": match.workspace_id,
            "workflow_type": WORKFLOW_TYPE,
            "rule_name": match.rule.rule_name,
            "trigger_event_id": event.event_id,
            "status": WorkflowStatus.STARTED.value,
            "steps": [],
            "started_at": _now(),
        }
        async with session_scope(self._session_factory) as db:
            dialect = db.get_bind().dialect.name
            if dialect == "postgresql":
                stmt = postgresql.insert(WorkflowRun).values(**values)
            elif dialect == "sqlite":
                stmt = sqlite.insert(WorkflowRun).values(**values)
            else:
                raise NotImplementedError(f"unsupported database dialect: {dialect}")
            result = await db.execute(stmt.on_conflict_do_nothing())
            return result.rowcount == 1

    async def _transition(self, workflow_id: str, target: WorkflowStatus, **values: Any) -> bool:
        """Move a run to *target* only from an allowed predecessor state."""
        stmt = (
            update(WorkflowRun)
            .where(
                WorkflowRun.workflow_id == workflow_id,
                WorkflowRun.status.in_([s.value for s in WorkflowStatus.predecessors_of(target)]),
            )
            .values(status=target.value, **values)
        )
        async with session_scope(self._session_factory) as db:
            result = await db.execute(stmt)
        if result.rowcount != 1:
            logger.info("workflow_transition_rejected", workflow_id=workflow_id, target=target.value)
            return False
        return True

    async def _save_steps(self, workflow_id: str, steps: list[dict[str, Any]]) -> bool:
        stmt = (
            update(WorkflowRun)
            .where(
                WorkflowRun.workflow_id == workflow_id,
                WorkflowRun.status == WorkflowStatus.IN_PROGRESS.value,
            )
            .values(steps=list(steps))
        )
        async with session_scope(self._session_factory) as db:
            result = await db.execute(stmt)
        return result.rowcount == 1

    async def _finish(
        self,
        workflow_id: str,
        status: WorkflowStatus,
        steps: list[dict[str, Any]],
        error_message: str | None,
    ) -> None:
        result = {
            "actions_total": len(steps),
            "actions_succeeded": sum(1 for s in steps if s["status"] != StepOutcome.FAILED.value),
            "actions_failed": sum(1 for s in steps if s["status"] == StepOutcome.FAILED.value),
            "emitted_event_ids": [
                s["output"]["event_id"]
                for s in steps
                if s["action"] == "emit_event" and s["output"]
            ],
        }
        moved = await self._transition(
            workflow_id,
            status,
            steps=list(steps),
            result=result,
            completed_at=_now(),
            error_message=error_message,
        )
        if moved:
            await self._metrics.workflow_finished(status.value)

    async def _require_run(self, workflow_id: str) -> WorkflowRun:
        run = await self.get_run(workflow_id)
        if run is None:
            raise TransientStorageError(f"workflow run {workflow_id} not found")
        return run
