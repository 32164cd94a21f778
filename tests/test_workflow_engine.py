"""WorkflowEngine: run lifecycle, actions, retries, timeouts and cancellation."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest
from sqlalchemy import update

from eventid.automation.actions import parse_actions
from eventid.automation.conditions import Always
from eventid.automation.matcher import RuleMatch
from eventid.db.models import PlatformIntegration, WorkflowRun, WorkflowStatus
from eventid.db.session import session_scope
from eventid.errors import TransientStorageError
from eventid.observability.metrics import EVENTS_EMITTED, WORKFLOW_ACTIONS, WORKFLOWS, CONSUMER_ERRORS
from eventid.registry.workspaces import RuleSnapshot
from eventid.schema.events import EventEnvelope, EventType
from eventid.workflows.engine import workflow_id_for

from conftest import gdpr_update

WS = "ws_saas_product"

EMIT_SPEC = {
    "type": "emit_event",
    "event_type": "SPEC_REQUESTED",
    "platform": "code",
    "copy_fields": ["jurisdiction", "regulation.title"],
    "payload": {"reason": "regulatory_update"},
}
INVOKE_SCAN = {"type": "invoke_platform", "platform": "scan", "operation": "/scans", "params": {"depth": "full"}}


@pytest.fixture(autouse=True)
def _sample_workspaces(seeded):
    return seeded


def _match(actions: list[dict], rule_name: str = "test_rule", workspace_id: str = WS) -> RuleMatch:
    rule = RuleSnapshot(
        workspace_id=workspace_id,
        rule_name=rule_name,
        event_type=EventType.REGULATORY_UPDATE,
        conditions=Always(),
        actions=parse_actions(actions),
    )
    return RuleMatch(workspace_id=workspace_id, rule=rule)


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ═══════════════════════════════════════════════════════════════════════════════
# HAPPY PATH
# ═══════════════════════════════════════════════════════════════════════════════

class TestCompletedRun:
    async def test_emit_and_invoke(self, workflow_engine, memory_log, platform, metrics):
        event = gdpr_update()
        run = await workflow_engine.execute(event, _match([EMIT_SPEC, INVOKE_SCAN]))

        assert run.status == WorkflowStatus.COMPLETED.value
        assert run.workflow_id == workflow_id_for(event.event_id, WS, "test_rule")
        assert run.workflow_type == "automation"
        assert run.trigger_event_id == event.event_id
        assert run.completed_at is not None
        assert run.error_message is None
        assert [s["status"] for s in run.steps] == ["succeeded", "succeeded"]
        assert [s["name"] for s in run.steps] == ["emit:SPEC_REQUESTED", "invoke:scan/scans"]
        assert run.result["actions_total"] == 2
        assert run.result["actions_failed"] == 0

        (follow_up,) = memory_log.published_envelopes()
        assert run.result["emitted_event_ids"] == [follow_up.event_id]
        assert len(platform.requests) == 1
        assert metrics.counter(WORKFLOWS, "completed") == 1
        assert metrics.counter(WORKFLOW_ACTIONS, "succeeded") == 2
        assert metrics.counter(EVENTS_EMITTED) == 1

    async def test_follow_up_event_shape(self, workflow_engine, memory_log):
        event = gdpr_update()
        run = await workflow_engine.execute(event, _match([EMIT_SPEC]))

        (follow_up,) = memory_log.published_envelopes()
        assert follow_up.event_type is EventType.SPEC_REQUESTED
        assert follow_up.correlation_id == "corr-gdpr-1"
        assert follow_up.user_id == "user_789"
        assert follow_up.event_data["workspace_id"] == WS
        assert follow_up.event_data["jurisdiction"] == {"framework": "GDPR", "region": "EU"}
        assert follow_up.event_data["regulation"] == {"title": "GDPR Art. 28 amendment"}
        assert follow_up.event_data["reason"] == "regulatory_update"
        assert follow_up.event_data["causation"] == {
            "event_id": event.event_id,
            "depth": 1,
            "workflow_id": run.workflow_id,
            "rule_name": "test_rule",
        }
        assert follow_up.causation_depth == 1

    async def test_uncorrelated_trigger_gets_new_correlation(self, workflow_engine, memory_log):
        await workflow_engine.execute(gdpr_update(correlation_id=None), _match([EMIT_SPEC]))
        (follow_up,) = memory_log.published_envelopes()
        assert follow_up.correlation_id.startswith("corr-")

    async def test_invoke_request(self, workflow_engine, platform):
        event = gdpr_update()
        run = await workflow_engine.execute(event, _match([INVOKE_SCAN]))

        (request,) = platform.requests
        assert str(request.url) == "http://scan-platform:8080/scans"
        assert request.method == "POST"
        assert request.headers["X-Correlation-ID"] == "corr-gdpr-1"
        assert request.headers["X-Workflow-ID"] == run.workflow_id
        body = json.loads(request.content)
        assert body["workspace_id"] == WS
        assert body["rule_name"] == "test_rule"
        assert body["params"] == {"depth": "full"}
        assert body["trigger_event"]["event_id"] == event.event_id

        step = run.steps[0]
        assert step["output"]["status_code"] == 202
        assert step["output"]["body"] == {"accepted": True}

    async def test_same_type_emits_get_distinct_event_ids(self, workflow_engine, memory_log, store):
        scan = {"type": "emit_event", "event_type": "SCAN_REQUESTED", "platform": "scan"}
        run = await workflow_engine.execute(gdpr_update(), _match([
            {**scan, "payload": {"target": "api"}},
            {**scan, "payload": {"target": "db"}},
        ]))

        api, db = memory_log.published_envelopes()
        assert [api.event_data["target"], db.event_data["target"]] == ["api", "db"]
        assert api.event_id != db.event_id
        assert run.result["emitted_event_ids"] == [api.event_id, db.event_id]
        assert await store.store_event(api) is True
        assert await store.store_event(db) is True

    async def test_long_rule_name_fits_workflow_type(self, workflow_engine):
        rule_name = "r" * 200
        run = await workflow_engine.execute(gdpr_update(), _match([EMIT_SPEC], rule_name=rule_name))

        assert run.rule_name == rule_name
        assert len(run.workflow_type) <= WorkflowRun.__table__.c.workflow_type.type.length

    async def test_run_lookups(self, workflow_engine):
        event = gdpr_update()
        run = await workflow_engine.execute(event, _match([EMIT_SPEC], rule_name="a"))
        await workflow_engine.execute(event, _match([EMIT_SPEC], rule_name="b"))

        assert (await workflow_engine.get_run(run.workflow_id)).rule_name == "a"
        assert await workflow_engine.get_run("nope") is None
        assert [r.rule_name for r in await workflow_engine.runs_for_event(event.event_id)] == ["a", "b"]


# ═══════════════════════════════════════════════════════════════════════════════
# IDEMPOTENCY AND TRANSITIONS
# ═══════════════════════════════════════════════════════════════════════════════

class TestIdempotency:
    async def test_same_trigger_creates_one_run(self, workflow_engine, memory_log, platform):
        event = gdpr_update()
        match = _match([EMIT_SPEC, INVOKE_SCAN])
        first = await workflow_engine.execute(event, match)
        second = await workflow_engine.execute(event, match)

        assert second.workflow_id == first.workflow_id
        assert second.status == first.status
        assert len(await workflow_engine.runs_for_event(event.event_id)) == 1
        assert len(memory_log.published) == 1
        assert len(platform.requests) == 1

    async def test_concurrent_creation(self, workflow_engine, memory_log):
        event = gdpr_update()
        match = _match([EMIT_SPEC])
        runs = await asyncio.gather(*(workflow_engine.execute(event, match) for _ in range(4)))
        assert len({r.workflow_id for r in runs}) == 1
        assert len(await workflow_engine.runs_for_event(event.event_id)) == 1
        assert len(memory_log.published) == 1

    async def test_terminal_run_never_moves_back(self, workflow_engine):
        run = await workflow_engine.execute(gdpr_update(), _match([EMIT_SPEC]))
        assert await workflow_engine._transition(run.workflow_id, WorkflowStatus.IN_PROGRESS) is False
        assert await workflow_engine._transition(run.workflow_id, WorkflowStatus.FAILED) is False
        assert await workflow_engine.cancel(run.workflow_id, "too late") is False
        assert (await workflow_engine.get_run(run.workflow_id)).status == "completed"

    def test_transition_table(self):
        assert WorkflowStatus.STARTED.can_transition_to(WorkflowStatus.IN_PROGRESS)
        assert WorkflowStatus.STARTED.can_transition_to(WorkflowStatus.FAILED)
        assert not WorkflowStatus.STARTED.can_transition_to(WorkflowStatus.COMPLETED)
        assert not WorkflowStatus.COMPLETED.can_transition_to(WorkflowStatus.FAILED)
        assert WorkflowStatus.FAILED.is_terminal
        assert WorkflowStatus.predecessors_of(WorkflowStatus.FAILED) == [
            WorkflowStatus.STARTED, WorkflowStatus.IN_PROGRESS,
        ]


# ═══════════════════════════════════════════════════════════════════════════════
# FAILURES, RETRIES, TIMEOUTS
# ═══════════════════════════════════════════════════════════════════════════════

class TestFailures:
    async def test_timeout_fails_run_and_keeps_all_steps(self, workflow_engine, platform, memory_log, metrics):
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(202)

        platform.responder = slow
        slow_scan = {**INVOKE_SCAN, "timeout_s": 0.05, "max_retries": 1}
        run = await workflow_engine.execute(gdpr_update(), _match([EMIT_SPEC, slow_scan]))

        assert run.status == "failed"
        assert len(run.steps) == 2
        emit_step, scan_step = run.steps
        assert emit_step["status"] == "succeeded"
        assert scan_step["status"] == "failed"
        assert scan_step["error_kind"] == "action_timeout"
        assert scan_step["attempts"] == 2
        assert run.error_message.startswith("action 'invoke:scan/scans' failed:")
        assert "timed out" in run.error_message
        assert run.result["actions_failed"] == 1
        assert len(memory_log.published) == 1
        assert metrics.counter(WORKFLOWS, "failed") == 1

    async def test_failure_does_not_stop_later_actions(self, workflow_engine, platform, memory_log):
        platform.responder = lambda request: httpx.Response(500)
        run = await workflow_engine.execute(gdpr_update(), _match([INVOKE_SCAN, EMIT_SPEC]))

        assert [s["status"] for s in run.steps] == ["failed", "succeeded"]
        assert run.steps[0]["attempts"] == 3
        assert len(memory_log.published) == 1

    async def test_retry_then_success(self, workflow_engine, platform, metrics):
        responses = iter([httpx.Response(503), httpx.Response(200, json={"scan_id": "s-1"})])
        platform.responder = lambda request: next(responses)
        run = await workflow_engine.execute(gdpr_update(), _match([INVOKE_SCAN]))

        assert run.status == "completed"
        (step,) = run.steps
        assert step["status"] == "retried_succeeded"
        assert step["attempts"] == 2
        assert step["output"]["body"] == {"scan_id": "s-1"}
        assert metrics.counter(WORKFLOW_ACTIONS, "retried_succeeded") == 1

    async def test_client_error_is_not_retried(self, workflow_engine, platform):
        platform.responder = lambda request: httpx.Response(422, json={"detail": "bad params"})
        run = await workflow_engine.execute(gdpr_update(), _match([INVOKE_SCAN]))

        assert run.status == "failed"
        assert run.steps[0]["attempts"] == 1
        assert "HTTP 422" in run.error_message
        assert len(platform.requests) == 1

    async def test_rate_limit_is_retried(self, workflow_engine, platform):
        platform.responder = lambda request: httpx.Response(429)
        run = await workflow_engine.execute(gdpr_update(), _match([INVOKE_SCAN]))
        assert run.steps[0]["attempts"] == 3

    async def test_transport_error(self, workflow_engine, platform):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        platform.responder = refuse
        run = await workflow_engine.execute(gdpr_update(), _match([{**INVOKE_SCAN, "max_retries": 0}]))
        assert run.steps[0]["error_kind"] == "action_failure"
        assert "ConnectError" in run.steps[0]["error"]

    async def test_disabled_integration(self, workflow_engine, platform, seeded):
        async with session_scope(seeded) as db:
            await db.execute(
                update(PlatformIntegration)
                .where(PlatformIntegration.workspace_id == WS, PlatformIntegration.platform == "scan")
                .values(enabled=False)
            )
        run = await workflow_engine.execute(gdpr_update(), _match([INVOKE_SCAN]))

        assert run.status == "failed"
        assert run.steps[0]["attempts"] == 1
        assert "no enabled scan integration" in run.steps[0]["error"]
        assert platform.requests == []

    async def test_emit_depth_exceeded(self, workflow_engine, memory_log):
        deep = gdpr_update(event_data={
            "jurisdiction": {"framework": "GDPR", "region": "EU"},
            "causation": {"event_id": "parent", "depth": 3},
        })
        run = await workflow_engine.execute(deep, _match([EMIT_SPEC]))

        assert run.status == "failed"
        assert run.steps[0]["error_kind"] == "emit_depth_exceeded"
        assert run.steps[0]["attempts"] == 1
        assert memory_log.published == []

    async def test_emit_retry_reuses_event_id(self, workflow_engine, memory_log, monkeypatch):
        attempted: list[str] = []
        real_publish = memory_log.publish

        async def flaky_publish(key: str, value: bytes):
            attempted.append(EventEnvelope.decode(value).event_id)
            if len(attempted) == 1:
                raise ConnectionError("broker unavailable")
            return await real_publish(key, value)

        monkeypatch.setattr(memory_log, "publish", flaky_publish)
        run = await workflow_engine.execute(gdpr_update(), _match([EMIT_SPEC]))

        assert run.steps[0]["status"] == "retried_succeeded"
        assert len(set(attempted)) == 1
        assert memory_log.published_envelopes()[0].event_id == attempted[0]


# ═══════════════════════════════════════════════════════════════════════════════
# STAGES
# ═══════════════════════════════════════════════════════════════════════════════

class TestStages:
    async def test_same_stage_runs_concurrently(self, workflow_engine, platform):
        second_arrived = asyncio.Event()

        async def responder(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/first":
                await asyncio.wait_for(second_arrived.wait(), timeout=0.5)
            else:
                second_arrived.set()
            return httpx.Response(200)

        platform.responder = responder
        actions = [
            {"type": "invoke_platform", "platform": "scan", "operation": "/first", "stage": 0, "max_retries": 0},
            {"type": "invoke_platform", "platform": "scan", "operation": "/second", "stage": 0, "max_retries": 0},
        ]
        run = await workflow_engine.execute(gdpr_update(), _match(actions))
        assert run.status == "completed"

    async def test_steps_saved_as_growing_prefix(self, workflow_engine, platform, monkeypatch):
        saved: list[list[int]] = []
        real_save = workflow_engine._save_steps

        async def save_steps(workflow_id, steps):
            saved.append([s["index"] for s in steps])
            return await real_save(workflow_id, steps)

        monkeypatch.setattr(workflow_engine, "_save_steps", save_steps)
        actions = [
            {"type": "invoke_platform", "platform": "scan", "operation": "/a", "stage": 0},
            {"type": "invoke_platform", "platform": "code", "operation": "/b", "stage": 0},
            {"type": "invoke_platform", "platform": "scan", "operation": "/c", "stage": 1},
        ]
        run = await workflow_engine.execute(gdpr_update(), _match(actions))

        assert saved == [[0, 1], [0, 1, 2]]
        assert [s["index"] for s in run.steps] == [0, 1, 2]
        assert platform.requests[-1].url.path == "/c"


# ═══════════════════════════════════════════════════════════════════════════════
# CANCELLATION
# ═══════════════════════════════════════════════════════════════════════════════

class TestCancel:
    async def test_cancel_in_flight(self, workflow_engine, platform, metrics):
        async def hang(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(10)
            return httpx.Response(200)

        platform.responder = hang
        event = gdpr_update()
        match = _match([EMIT_SPEC, {**INVOKE_SCAN, "timeout_s": 5}])
        running = asyncio.create_task(workflow_engine.execute(event, match))
        await _wait_until(lambda: len(platform.requests) == 1)

        workflow_id = workflow_id_for(event.event_id, WS, "test_rule")
        assert await workflow_engine.cancel(workflow_id, "operator request") is True
        run = await running

        assert run.status == "failed"
        assert run.error_message == "cancelled: operator request"
        assert [s["status"] for s in run.steps] == ["succeeded", "failed"]
        assert run.steps[1]["error_kind"] == "cancelled"
        assert metrics.counter(WORKFLOWS, "failed") == 1

    async def test_cancel_run_owned_elsewhere(self, workflow_engine, seeded):
        async with session_scope(seeded) as db:
            db.add(WorkflowRun(
                workflow_id="wf-orphan",
                workspace_id=WS,
                workflow_type="automation",
                rule_name="test_rule",
                trigger_event_id="evt-1",
                status="in_progress",
                steps=[],
                started_at=datetime.now(timezone.utc),
            ))
        assert await workflow_engine.cancel("wf-orphan", "stuck") is True
        run = await workflow_engine.get_run("wf-orphan")
        assert run.status == "failed"
        assert run.error_message == "cancelled: stuck"
        assert run.completed_at is not None

    async def test_cancel_while_loading_integrations(self, workflow_engine, registry, platform, monkeypatch):
        event = gdpr_update()
        workflow_id = workflow_id_for(event.event_id, WS, "test_rule")
        real_integrations_for = registry.integrations_for
        accepted: list[bool] = []

        async def integrations_for(workspace_id):
            accepted.append(await workflow_engine.cancel(workflow_id, "operator request"))
            return await real_integrations_for(workspace_id)

        monkeypatch.setattr(registry, "integrations_for", integrations_for)
        run = await workflow_engine.execute(event, _match([INVOKE_SCAN]))

        assert accepted == [True]
        assert run.status == "failed"
        assert run.error_message == "cancelled: operator request"
        assert platform.requests == []

    async def test_run_finalized_elsewhere_before_actions(self, workflow_engine, registry, platform, monkeypatch):
        event = gdpr_update()
        workflow_id = workflow_id_for(event.event_id, WS, "test_rule")
        real_integrations_for = registry.integrations_for

        async def integrations_for(workspace_id):
            await workflow_engine._transition(
                workflow_id, WorkflowStatus.FAILED, error_message="cancelled: other node"
            )
            return await real_integrations_for(workspace_id)

        monkeypatch.setattr(registry, "integrations_for", integrations_for)
        run = await workflow_engine.execute(event, _match([INVOKE_SCAN]))

        assert run.status == "failed"
        assert run.error_message == "cancelled: other node"
        assert platform.requests == []
        assert run.steps == []

    async def test_run_finalized_elsewhere_between_stages(self, workflow_engine, platform, seeded):
        event = gdpr_update()
        workflow_id = workflow_id_for(event.event_id, WS, "test_rule")

        async def first_then_cancel(request: httpx.Request) -> httpx.Response:
            await workflow_engine._transition(
                workflow_id, WorkflowStatus.FAILED, error_message="cancelled: other node"
            )
            return httpx.Response(200)

        platform.responder = first_then_cancel
        run = await workflow_engine.execute(
            event, _match([INVOKE_SCAN, {**INVOKE_SCAN, "operation": "/scans/second"}])
        )

        assert run.status == "failed"
        assert run.error_message == "cancelled: other node"
        assert [r.url.path for r in platform.requests] == ["/scans"]

    async def test_cancel_unknown_run(self, workflow_engine):
        assert await workflow_engine.cancel("wf-missing", "whatever") is False


# ═══════════════════════════════════════════════════════════════════════════════
# RECOVERY OF ABANDONED RUNS
# ═══════════════════════════════════════════════════════════════════════════════

class TestRecovery:
    async def _abandon(self, seeded, event, status: str, steps: list[dict]) -> str:
        workflow_id = workflow_id_for(event.event_id, WS, "test_rule")
        async with session_scope(seeded) as db:
            db.add(WorkflowRun(
                workflow_id=workflow_id,
                workspace_id=WS,
                workflow_type="automation",
                rule_name="test_rule",
                trigger_event_id=event.event_id,
                status=status,
                steps=steps,
                started_at=datetime.now(timezone.utc),
            ))
        return workflow_id

    @pytest.mark.parametrize("status", ["started", "in_progress"])
    async def test_redelivery_fails_abandoned_run(self, workflow_engine, seeded, platform, metrics, status):
        event = gdpr_update()
        done = {"index": 0, "name": "invoke:scan/scans", "status": "succeeded"}
        workflow_id = await self._abandon(seeded, event, status, [done])

        run = await workflow_engine.execute(event, _match([INVOKE_SCAN, EMIT_SPEC]))

        assert run.workflow_id == workflow_id
        assert run.status == "failed"
        assert run.error_message == f"interrupted: run left {status} after 1 step(s)"
        assert run.completed_at is not None
        assert run.steps == [done]
        assert platform.requests == []
        assert metrics.counter(WORKFLOWS, "failed") == 1

    async def test_recovered_run_is_then_returned_unchanged(self, workflow_engine, seeded):
        event = gdpr_update()
        await self._abandon(seeded, event, "in_progress", [])
        first = await workflow_engine.execute(event, _match([EMIT_SPEC]))
        second = await workflow_engine.execute(event, _match([EMIT_SPEC]))

        assert second.status == first.status == "failed"
        assert second.error_message == first.error_message
        assert second.completed_at == first.completed_at


# ═══════════════════════════════════════════════════════════════════════════════
# EXECUTE ALL
# ═══════════════════════════════════════════════════════════════════════════════

class TestExecuteAll:
    async def test_runs_every_match_in_order(self, workflow_engine):
        event = gdpr_update()
        runs = await workflow_engine.execute_all(event, [_match([EMIT_SPEC], "b"), _match([EMIT_SPEC], "a")])
        assert [r.rule_name for r in runs] == ["b", "a"]

    async def test_unexpected_error_is_isolated(self, workflow_engine, metrics, monkeypatch):
        real_execute = workflow_engine.execute

        async def execute(event, match):
            if match.rule.rule_name == "boom":
                raise RuntimeError("boom")
            return await real_execute(event, match)

        monkeypatch.setattr(workflow_engine, "execute", execute)
        runs = await workflow_engine.execute_all(
            gdpr_update(), [_match([EMIT_SPEC], "boom"), _match([EMIT_SPEC], "fine")]
        )
        assert [r.rule_name for r in runs] == ["fine"]
        assert metrics.counter(CONSUMER_ERRORS, "unexpected") == 1

    async def test_transient_error_raised_after_siblings(self, workflow_engine, monkeypatch):
        real_execute = workflow_engine.execute
        executed: list[str] = []

        async def execute(event, match):
            if match.rule.rule_name == "db_down":
                raise TransientStorageError("connection refused")
            executed.append(match.rule.rule_name)
            return await real_execute(event, match)

        monkeypatch.setattr(workflow_engine, "execute", execute)
        event = gdpr_update()
        with pytest.raises(TransientStorageError):
            await workflow_engine.execute_all(event, [_match([EMIT_SPEC], "db_down"), _match([EMIT_SPEC], "ok")])
        assert executed == ["ok"]
        assert [r.rule_name for r in await workflow_engine.runs_for_event(event.event_id)] == ["ok"]
