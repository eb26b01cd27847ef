"""Builders and fakes shared by the test modules."""

import asyncio
from datetime import datetime, timedelta, timezone

from orchestrator.escalation.policy import EscalationPolicy
from orchestrator.escalation.scheduler import EscalationScheduler
from orchestrator.ingestion.ingestor import SignalIngestor
from orchestrator.ingestion.models import Signal
from orchestrator.ingestion.window import CorrelationWindow
from orchestrator.ledger.store import IncidentLedger
from orchestrator.matching.matcher import PatternMatcher, PatternRegistry
from orchestrator.matching.patterns import IncidentPattern
from orchestrator.playbook.actions import ActionResult
from orchestrator.playbook.engine import PlaybookEngine
from orchestrator.playbook.models import Incident, StepOutcome
from orchestrator.reporting.aggregator import MetricsAggregator
from orchestrator.service import Orchestrator

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

HANG = "hang"


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingSleep:
    """Stands in for asyncio.sleep during backoff so tests never wait."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ScriptedActions:
    """Action executor that plays back scripted outcomes per action_ref.

    A script entry is a StepOutcome, an exception instance to raise, or HANG.
    Unscripted calls succeed.
    """

    def __init__(self, script: dict | None = None) -> None:
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls: list[tuple[str, int]] = []

    async def execute(self, action_ref, context):
        self.calls.append((action_ref, context.attempt_number))
        queue = self.script.get(action_ref, [])
        item = queue.pop(0) if queue else StepOutcome.SUCCESS
        if item == HANG:
            await asyncio.sleep(3600)
        if isinstance(item, Exception):
            raise item
        return ActionResult(outcome=item, detail=f"scripted {item.value}")


def make_signal(
    metric_name: str = "http_error_rate",
    value: float = 0.2,
    *,
    signal_id: str | None = None,
    source: str = "prometheus",
    timestamp: datetime = T0,
    labels: dict | None = None,
) -> Signal:
    fields = {
        "source": source,
        "timestamp": timestamp,
        "metric_name": metric_name,
        "value": value,
        "labels": {"service": "checkout"} if labels is None else labels,
    }
    if signal_id:
        fields["id"] = signal_id
    return Signal(**fields)


def make_pattern(
    pattern_id: str = "high-error-rate",
    *,
    severity: str = "P1",
    metric_name: str = "http_error_rate",
    threshold: float | None = 0.05,
    min_occurrences: int = 1,
    steps: list | None = None,
    group_by: tuple = ("service",),
    response_time_sla=None,
) -> IncidentPattern:
    return IncidentPattern.model_validate({
        "pattern_id": pattern_id,
        "severity": severity,
        "match_predicate": {
            "metric_name": metric_name,
            "threshold": threshold,
            "min_occurrences": min_occurrences,
        },
        "steps": [{"step_id": "restart", "action_ref": "svc.restart"}] if steps is None else steps,
        "group_by": group_by,
        "response_time_sla": response_time_sla,
    })


def make_incident(
    incident_id: str = "inc-1",
    *,
    pattern_id: str = "high-error-rate",
    severity: str = "P1",
    group_key: str | None = None,
    opened_at: datetime = T0,
) -> Incident:
    return Incident(
        incident_id=incident_id,
        pattern_id=pattern_id,
        severity=severity,
        group_key=group_key or f"{pattern_id}|service={incident_id}",
        opened_at=opened_at,
    )


def build_engine(
    ledger: IncidentLedger,
    patterns: list[IncidentPattern],
    actions,
    clock: FakeClock,
    *,
    sleep: RecordingSleep | None = None,
    notifier=None,
) -> tuple[PlaybookEngine, EscalationScheduler, PatternRegistry]:
    registry = PatternRegistry(patterns)
    scheduler = EscalationScheduler(ledger, EscalationPolicy(), registry, notifier, tick_seconds=1, clock=clock)
    engine = PlaybookEngine(
        ledger, registry, actions, scheduler,
        owner="engine-test",
        backoff_base=1.0,
        backoff_cap=60.0,
        sleep=sleep or RecordingSleep(),
        clock=clock,
    )
    return engine, scheduler, registry


def build_orchestrator(
    ledger: IncidentLedger,
    patterns: list[IncidentPattern],
    actions,
    clock: FakeClock,
    *,
    cooldown_seconds: int = 3600,
) -> Orchestrator:
    engine, scheduler, registry = build_engine(ledger, patterns, actions, clock)
    return Orchestrator(
        SignalIngestor(CorrelationWindow(horizon_seconds=600)),
        PatternMatcher(registry),
        engine,
        ledger,
        scheduler,
        MetricsAggregator(ledger),
        cooldown_seconds=cooldown_seconds,
        clock=clock,
    )
