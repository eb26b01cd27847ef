"""Orchestrator — wires ingestion, matching, the playbook engine, escalation and metrics."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from orchestrator.config import settings
from orchestrator.errors import ActiveIncidentExists, ClaimConflict, InvalidTransition
from orchestrator.escalation.scheduler import EscalationScheduler
from orchestrator.ingestion.ingestor import SignalIngestor
from orchestrator.ingestion.models import RawSignal, Signal
from orchestrator.ledger.store import IncidentLedger
from orchestrator.matching.matcher import PatternMatcher
from orchestrator.matching.patterns import IncidentPattern
from orchestrator.playbook.engine import PlaybookEngine
from orchestrator.playbook.models import Incident, IncidentStatus, Review
from orchestrator.reporting.aggregator import MetricsAggregator
from orchestrator.reporting.models import MetricsSnapshot, Period

logger = logging.getLogger("orchestrator")

_RUNNABLE = {IncidentStatus.PENDING, IncidentStatus.RUNNING, IncidentStatus.RETRYING}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Orchestrator:
    def __init__(
        self,
        ingestor: SignalIngestor,
        matcher: PatternMatcher,
        engine: PlaybookEngine,
        ledger: IncidentLedger,
        escalation: EscalationScheduler,
        aggregator: MetricsAggregator,
        *,
        cooldown_seconds: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.ingestor = ingestor
        self.matcher = matcher
        self.engine = engine
        self.ledger = ledger
        self.escalation = escalation
        self.aggregator = aggregator
        self._cooldown = timedelta(
            seconds=settings.reopen_cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        )
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()

    # ── Signal path ────────────────────────────────────────────────

    def ingest(self, raw_event: dict | RawSignal) -> tuple[Signal, bool]:
        """Validate and store a raw event. Raises MalformedSignal."""
        return self.ingestor.accept(raw_event)

    def retract(self, signal: Signal) -> None:
        self.ingestor.retract(signal)

    async def handle_signal(self, signal: Signal) -> Incident | None:
        """Match a stored signal and open, reopen or join the incident for its group."""
        window = self.ingestor.window.recent(signal.window_key)
        pattern = self.matcher.match(signal, window)
        if pattern is None:
            return None

        incident, start = self.correlate(pattern, signal)
        if start and incident.status in _RUNNABLE:
            self.submit(incident.incident_id)
        return incident

    def correlate(self, pattern: IncidentPattern, signal: Signal) -> tuple[Incident, bool]:
        """Find or create the one incident for the signal's group.

        Returns the incident and whether a playbook run should start for it.
        """
        group_key = pattern.group_key(signal)

        active = self.ledger.find_active(group_key)
        if active is not None:
            if signal.id not in active.signal_ids:
                self.ledger.link_signal(active.incident_id, signal.id)
                logger.info("Signal joined active incident: signal=%s incident=%s",
                            signal.id, active.incident_id)
            return active, False

        recent = self.ledger.find_reopenable(group_key, self._clock(), self._cooldown)
        if recent is not None:
            if signal.id in recent.signal_ids:
                return recent, False
            return self.engine.reopen_incident(recent.incident_id, signal), True

        try:
            return self.engine.open_incident(pattern, signal), True
        except ActiveIncidentExists as exc:
            return self.ledger.get(exc.incident_id), False

    # ── Background execution ───────────────────────────────────────

    def _spawn(self, coro: Awaitable, incident_id: str) -> asyncio.Task:
        task = asyncio.create_task(self._guard(coro, incident_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro: Awaitable, incident_id: str) -> None:
        try:
            await coro
        except ClaimConflict as exc:
            logger.info("Incident already being driven: id=%s holder=%s", incident_id, exc.holder)
        except Exception:
            logger.exception("Playbook run failed: incident=%s", incident_id)

    def submit(self, incident_id: str) -> asyncio.Task:
        return self._spawn(self.engine.run(incident_id), incident_id)

    async def drain(self) -> None:
        """Wait until every background playbook run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Operator actions ───────────────────────────────────────────

    def resolve_step(self, incident_id: str, detail: str = "", operator: str = "") -> Incident:
        """Mark an escalated incident's current step as manually resolved and resume it."""
        incident = self.ledger.get(incident_id)
        if incident.status != IncidentStatus.ESCALATED:
            raise InvalidTransition(incident_id, incident.status.value, "manually resolved")
        self._spawn(self.engine.resume_manual(incident_id, detail, operator), incident_id)
        return incident

    def abort(self, incident_id: str, reason: str = "", operator: str = "") -> Incident:
        return self.engine.abort(incident_id, reason, operator)

    def review(
        self, incident_id: str, *, false_positive: bool = False, notes: str = "", reviewer: str = ""
    ) -> Incident:
        incident = self.ledger.review(incident_id, Review(
            reviewed_at=self._clock(),
            reviewer=reviewer,
            false_positive=false_positive,
            notes=notes,
        ))
        logger.info("Incident reviewed: id=%s false_positive=%s", incident_id, false_positive)
        return incident

    def metrics(self, period: Period) -> MetricsSnapshot:
        return self.aggregator.compute(period)

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        await self.escalation.start()
        self._spawn(self.engine.recover(), "recovery")

    async def stop(self) -> None:
        await self.escalation.stop()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
