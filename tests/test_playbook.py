"""Tests for the playbook engine and action executors."""

import asyncio

import httpx
import pytest

from helpers import HANG, RecordingSleep, ScriptedActions, build_engine, make_pattern, make_signal
from orchestrator.errors import (
    ActionExecutorUnavailable,
    ClaimConflict,
    InvalidTransition,
    StepFailure,
    StepTimeout,
)
from orchestrator.ledger.events import LedgerEventKind
from orchestrator.ledger.store import IncidentLedger
from orchestrator.playbook.actions import ActionContext, ActionRegistry, ActionResult, HttpActionExecutor
from orchestrator.playbook.models import IncidentStatus, Lifecycle, StepOutcome

FAIL = StepOutcome.FAILURE

TWO_STEPS = [
    {"step_id": "rollback", "action_ref": "deploy.rollback", "max_retries": 1, "on_failure": "escalate"},
    {"step_id": "scale-out", "action_ref": "k8s.scale", "max_retries": 2, "on_failure": "retry"},
]


def _open(engine, pattern):
    return engine.open_incident(pattern, make_signal())


class TestRetrySemantics:
    def test_max_retries_two_gives_three_attempts(self, ledger, clock):
        pattern = make_pattern(steps=[
            {"step_id": "restart", "action_ref": "svc.restart", "max_retries": 2, "on_failure": "retry"},
        ])
        actions = ScriptedActions({"svc.restart": [FAIL, FAIL, FAIL]})
        sleep = RecordingSleep()
        engine, _, _ = build_engine(ledger, [pattern], actions, clock, sleep=sleep)

        incident = asyncio.run(engine.run(_open(engine, pattern).incident_id))

        assert incident.status == IncidentStatus.ABORTED
        assert [r.attempt_number for r in incident.step_history] == [1, 2, 3]
        assert sleep.delays == [1.0, 2.0]

    def test_retry_then_success(self, ledger, clock):
        pattern = make_pattern(steps=[
            {"step_id": "restart", "action_ref": "svc.restart", "max_retries": 2, "on_failure": "retry"},
        ])
        actions = ScriptedActions({"svc.restart": [FAIL, FAIL]})
        engine, _, _ = build_engine(ledger, [pattern], actions, clock)

        incident = asyncio.run(engine.run(_open(engine, pattern).incident_id))

        assert incident.status == IncidentStatus.SUCCEEDED
        assert incident.lifecycle == Lifecycle.RESOLVED
        assert [r.outcome for r in incident.step_history] == [FAIL, FAIL, StepOutcome.SUCCESS]
        assert [r.attempt_number for r in incident.step_history] == [1, 2, 3]

    def test_abort_policy_never_retries(self, ledger, clock):
        pattern = make_pattern(steps=[
            {"step_id": "restart", "action_ref": "svc.restart", "max_retries": 3, "on_failure": "abort"},
        ])
        actions = ScriptedActions({"svc.restart": [FAIL]})
        engine, _, _ = build_engine(ledger, [pattern], actions, clock)

        incident = asyncio.run(engine.run(_open(engine, pattern).incident_id))

        assert incident.status == IncidentStatus.ABORTED
        assert len(actions.calls) == 1

    def test_backoff_is_capped(self, ledger, clock):
        engine, _, _ = build_engine(ledger, [], ScriptedActions(), clock)
        assert [engine.backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]
        assert engine.backoff_delay(10) == 60.0

    def test_timeout_recorded_distinctly(self, ledger, clock):
        pattern = make_pattern(steps=[
            {"step_id": "restart", "action_ref": "svc.restart", "timeout": 0.05},
        ])
        actions = ScriptedActions({"svc.restart": [HANG]})
        engine, _, _ = build_engine(ledger, [pattern], actions, clock)

        incident = asyncio.run(engine.run(_open(engine, pattern).incident_id))

        assert incident.status == IncidentStatus.ABORTED
        assert incident.step_history[0].outcome == StepOutcome.TIMEOUT

    def test_unavailable_executor_retries_without_backoff(self, ledger, clock):
        pattern = make_pattern(steps=[
            {"step_id": "restart", "action_ref": "svc.restart", "max_retries": 1, "on_failure": "retry"},
        ])
        sleep = RecordingSleep()
        engine, _, _ = build_engine(ledger, [pattern], ActionRegistry(), clock, sleep=sleep)

        incident = asyncio.run(engine.run(_open(engine, pattern).incident_id))

        assert incident.status == IncidentStatus.ABORTED
        assert sleep.delays == [0.0]
        assert "no handler" in incident.step_history[0].detail

    def test_action_exception_is_a_failure(self, ledger, clock):
        pattern = make_pattern()
        actions = ScriptedActions({"svc.restart": [RuntimeError("boom")]})
        engine, _, _ = build_engine(ledger, [pattern], actions, clock)

        incident = asyncio.run(engine.run(_open(engine, pattern).incident_id))

        assert incident.step_history[0].outcome == FAIL
        assert "RuntimeError" in incident.step_history[0].detail

    def test_step_failure_exceptions_map_to_outcomes(self, ledger, clock):
        pattern = make_pattern(steps=[
            {"step_id": "restart", "action_ref": "svc.restart", "max_retries": 1, "on_failure": "retry"},
        ])
        actions = ScriptedActions({"svc.restart": [
            StepTimeout("executor gave up after 30s"),
            StepFailure("pod stuck in CrashLoopBackOff"),
        ]})
        engine, _, _ = build_engine(ledger, [pattern], actions, clock)

        incident = asyncio.run(engine.run(_open(engine, pattern).incident_id))

        assert [r.outcome for r in incident.step_history] == [StepOutcome.TIMEOUT, FAIL]
        assert incident.step_history[0].detail == "executor gave up after 30s"
        assert incident.step_history[1].detail == "pod stuck in CrashLoopBackOff"


class TestEscalateAndResume:
    def test_exhausted_escalate_waits_for_manual_fix(self, ledger, clock):
        pattern = make_pattern(steps=TWO_STEPS)
        actions = ScriptedActions({"deploy.rollback": [FAIL, FAIL]})
        engine, _, _ = build_engine(ledger, [pattern], actions, clock)
        incident_id = _open(engine, pattern).incident_id

        incident = asyncio.run(engine.run(incident_id))
        assert incident.status == IncidentStatus.ESCALATED
        assert incident.current_step_index == 0
        assert ledger.get(incident_id).escalation_level == 1

        incident = asyncio.run(engine.resume_manual(incident_id, "rolled back by hand", "alice"))
        assert incident.status == IncidentStatus.SUCCEEDED
        assert incident.manual_intervention is True
        manual = [r for r in incident.step_history if r.manual]
        assert len(manual) == 1 and manual[0].step_id == "rollback"
        assert actions.calls[-1] == ("k8s.scale", 1)

    def test_resume_requires_escalated(self, ledger, clock):
        pattern = make_pattern()
        engine, _, _ = build_engine(ledger, [pattern], ScriptedActions(), clock)
        incident_id = _open(engine, pattern).incident_id
        with pytest.raises(InvalidTransition):
            asyncio.run(engine.resume_manual(incident_id))
        assert ledger.claim_holder(incident_id) is None


class TestExecutionInvariants:
    def test_step_index_monotonic_in_ledger(self, ledger, clock):
        pattern = make_pattern(steps=TWO_STEPS)
        actions = ScriptedActions({"deploy.rollback": [FAIL], "k8s.scale": [FAIL, FAIL]})
        engine, _, _ = build_engine(ledger, [pattern], actions, clock)
        incident_id = _open(engine, pattern).incident_id

        asyncio.run(engine.run(incident_id))

        indices = [
            e.data["current_step_index"]
            for e in ledger.events(incident_id)
            if "current_step_index" in e.data
        ]
        assert indices == sorted(indices)
        assert ledger.get(incident_id).status == IncidentStatus.SUCCEEDED

    def test_claim_held_elsewhere_blocks_run(self, ledger, clock):
        pattern = make_pattern()
        actions = ScriptedActions()
        engine, _, _ = build_engine(ledger, [pattern], actions, clock)
        incident_id = _open(engine, pattern).incident_id
        ledger.claim(incident_id, "other-engine")

        with pytest.raises(ClaimConflict):
            asyncio.run(engine.run(incident_id))
        assert actions.calls == []

    def test_operator_abort_stops_playbook(self, ledger, clock):
        pattern = make_pattern(steps=[
            {"step_id": "restart", "action_ref": "svc.restart", "max_retries": 3, "on_failure": "retry"},
        ])
        actions = ScriptedActions({"svc.restart": [FAIL, FAIL]})
        engine, _, _ = build_engine(ledger, [pattern], actions, clock)
        incident_id = _open(engine, pattern).incident_id

        async def abort_during_backoff(delay):
            engine.abort(incident_id, "false alarm", "bob")

        engine._sleep = abort_during_backoff
        incident = asyncio.run(engine.run(incident_id))

        assert incident.status == IncidentStatus.ABORTED
        assert len(actions.calls) == 1
        with pytest.raises(InvalidTransition):
            engine.abort(incident_id)

    def test_abort_during_step_discards_its_result(self, ledger, clock):
        pattern = make_pattern()
        engine, _, _ = build_engine(ledger, [pattern], ScriptedActions(), clock)
        incident_id = _open(engine, pattern).incident_id

        class AbortedMidway:
            async def execute(self, action_ref, context):
                engine.abort(incident_id, "paged the owner instead", "bob")
                return ActionResult(outcome=StepOutcome.SUCCESS, detail="restarted")

        engine._executor = AbortedMidway()
        incident = asyncio.run(engine.run(incident_id))

        assert incident.status == IncidentStatus.ABORTED
        assert incident.step_history == []
        kinds = [e.kind for e in ledger.events(incident_id)]
        assert LedgerEventKind.STEP not in kinds

    def test_recovery_continues_attempt_numbering(self, ledger_path, clock):
        pattern = make_pattern(steps=[
            {"step_id": "restart", "action_ref": "svc.restart", "max_retries": 2, "on_failure": "retry"},
        ])
        ledger = IncidentLedger(ledger_path)
        crashed, _, _ = build_engine(ledger, [pattern], ScriptedActions({"svc.restart": [FAIL]}), clock)
        incident_id = _open(crashed, pattern).incident_id
        ledger.claim(incident_id, crashed.owner)
        ledger.transition(incident_id, IncidentStatus.RUNNING)
        ledger.record_step(incident_id, asyncio.run(
            crashed._attempt(ledger.get(incident_id), pattern.steps[0], 0, 1)
        )[0])

        restarted = IncidentLedger(ledger_path)
        actions = ScriptedActions()
        engine, _, _ = build_engine(restarted, [pattern], actions, clock)

        assert asyncio.run(engine.recover()) == [incident_id]
        incident = restarted.get(incident_id)
        assert incident.status == IncidentStatus.SUCCEEDED
        assert [r.attempt_number for r in incident.step_history] == [1, 2]
        assert actions.calls == [("svc.restart", 2)]
        assert restarted.events(incident_id)[-1].kind == LedgerEventKind.RELEASED


def _context():
    return ActionContext(
        incident_id="inc-1", pattern_id="p", severity="P1", step_id="s", attempt_number=1,
    )


class TestActionRegistry:
    def test_decorated_handler(self):
        registry = ActionRegistry()

        @registry.action("cache.failover")
        async def failover(context):
            return ActionResult(outcome=StepOutcome.SUCCESS, detail=context.incident_id)

        assert "cache.failover" in registry
        result = asyncio.run(registry.execute("cache.failover", _context()))
        assert result.detail == "inc-1"

    def test_missing_handler_without_fallback(self):
        with pytest.raises(ActionExecutorUnavailable):
            asyncio.run(ActionRegistry().execute("nope", _context()))

    def test_fallback_used(self):
        fallback = ScriptedActions({"remote.action": [FAIL]})
        result = asyncio.run(ActionRegistry(fallback=fallback).execute("remote.action", _context()))
        assert result.outcome == FAIL


class TestHttpActionExecutor:
    def _executor(self, handler):
        executor = HttpActionExecutor("http://executor")
        executor._http = httpx.AsyncClient(base_url="http://executor", transport=httpx.MockTransport(handler))
        return executor

    def test_success(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            return httpx.Response(200, json={"outcome": "success", "detail": "done"})

        result = asyncio.run(self._executor(handler).execute("iam.revoke", _context()))
        assert result.outcome == StepOutcome.SUCCESS
        assert seen["path"] == "/actions/iam.revoke"

    def test_server_error_means_unavailable(self):
        executor = self._executor(lambda request: httpx.Response(503))
        with pytest.raises(ActionExecutorUnavailable):
            asyncio.run(executor.execute("iam.revoke", _context()))

    def test_client_error_is_failure(self):
        executor = self._executor(lambda request: httpx.Response(422))
        assert asyncio.run(executor.execute("iam.revoke", _context())).outcome == FAIL

    def test_unknown_outcome_is_failure(self):
        executor = self._executor(lambda request: httpx.Response(200, json={"outcome": "maybe"}))
        assert asyncio.run(executor.execute("iam.revoke", _context())).outcome == FAIL

    def test_request_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        result = asyncio.run(self._executor(handler).execute("iam.revoke", _context()))
        assert result.outcome == StepOutcome.TIMEOUT
