"""Escalation scheduler — fires tier escalations when response-time SLAs are breached."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import threading
from datetime import datetime, timezone
from typing import Callable

from orchestrator.config import settings
from orchestrator.errors import IncidentNotFound
from orchestrator.escalation.notifier import EscalationNotifier, LoggingNotifier
from orchestrator.escalation.policy import EscalationPolicy
from orchestrator.ledger.store import IncidentLedger
from orchestrator.matching.matcher import PatternRegistry
from orchestrator.playbook.models import EscalationEvent, Incident
from orchestrator.telemetry.metrics import escalations_total

logger = logging.getLogger("orchestrator.escalation")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EscalationScheduler:
    """Priority queue of (deadline, incident, level, cycle) entries.

    Entries are never removed eagerly: when one pops, the incident summary is
    re-read from the ledger and the entry is ignored if the incident closed,
    already escalated past that level, or was reopened since. The ledger itself
    refuses an escalation from a stale level, so the same tier is never emitted twice.
    """

    def __init__(
        self,
        ledger: IncidentLedger,
        policy: EscalationPolicy,
        patterns: PatternRegistry,
        notifier: EscalationNotifier | None = None,
        *,
        tick_seconds: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ledger = ledger
        self._policy = policy
        self._patterns = patterns
        self._notifier = notifier or LoggingNotifier()
        self._tick_seconds = settings.escalation_tick_seconds if tick_seconds is None else tick_seconds
        self._clock = clock
        self._heap: list[tuple[datetime, int, str, int, int]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._running = False
        self._task: asyncio.Task | None = None

    def deadline(self, incident: Incident) -> datetime | None:
        """When the incident's current tier hands over, or None at the top tier."""
        pattern = self._patterns.get(incident.pattern_id)
        threshold = self._policy.threshold(
            incident.severity,
            incident.escalation_level,
            pattern.response_time_sla if pattern else None,
        )
        return None if threshold is None else incident.clock_start + threshold

    def schedule(self, incident: Incident) -> None:
        if not incident.is_active:
            return
        due = self.deadline(incident)
        if due is None:
            return
        with self._lock:
            heapq.heappush(
                self._heap,
                (due, next(self._seq), incident.incident_id, incident.escalation_level, incident.cycle),
            )
        logger.debug("Escalation scheduled: incident=%s level=%d due=%s",
                     incident.incident_id, incident.escalation_level, due.isoformat())

    def pending(self) -> int:
        with self._lock:
            return len(self._heap)

    def tick(self, now: datetime | None = None) -> list[EscalationEvent]:
        """Escalate every incident whose current-tier deadline has passed."""
        now = now or self._clock()
        events: list[EscalationEvent] = []

        while True:
            with self._lock:
                if not self._heap or self._heap[0][0] > now:
                    break
                _, _, incident_id, level, cycle = heapq.heappop(self._heap)

            try:
                incident = self._ledger.get(incident_id)
            except IncidentNotFound:
                continue
            if not incident.is_active or incident.escalation_level != level or incident.cycle != cycle:
                continue

            elapsed = now - incident.clock_start
            reason = (
                f"{incident.severity.value} response time exceeded: "
                f"{int(elapsed.total_seconds() // 60)} min without resolution"
            )
            event = self._escalate(incident, now, reason)
            if event:
                events.append(event)

        return events

    def escalate_now(
        self, incident_id: str, reason: str, now: datetime | None = None
    ) -> EscalationEvent | None:
        """Escalate one tier immediately, e.g. when a step exhausts its retries."""
        incident = self._ledger.get(incident_id)
        if not incident.is_active:
            return None
        return self._escalate(incident, now or self._clock(), reason)

    def _escalate(self, incident: Incident, now: datetime, reason: str) -> EscalationEvent | None:
        level = incident.escalation_level
        if level >= self._policy.max_level:
            logger.warning("Incident already at top escalation tier: id=%s", incident.incident_id)
            return None

        event = EscalationEvent(
            incident_id=incident.incident_id,
            from_tier=self._policy.tier_name(level),
            to_tier=self._policy.tier_name(level + 1),
            from_level=level,
            to_level=level + 1,
            triggered_at=now,
            reason=reason,
        )
        if not self._ledger.record_escalation(event):
            return None

        escalations_total.labels(severity=incident.severity.value, to_tier=event.to_tier).inc()
        logger.warning(
            "Incident escalated: id=%s %s -> %s (%s)",
            incident.incident_id, event.from_tier, event.to_tier, reason,
        )
        self.schedule(self._ledger.get(incident.incident_id))
        return event

    async def publish(self, events: list[EscalationEvent]) -> None:
        """Hand events to the notifier. Delivery is best effort; emission is already durable."""
        for event in events:
            try:
                await self._notifier.notify(event)
            except Exception:
                logger.exception("Escalation notification failed: incident=%s to=%s",
                                 event.incident_id, event.to_tier)

    # ── Background loop ────────────────────────────────────────────

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._tick_loop())
        logger.info("Escalation scheduler started: tick=%ss", self._tick_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Escalation scheduler stopped")

    async def _tick_loop(self) -> None:
        while self._running:
            try:
                events = self.tick()
                if events:
                    await self.publish(events)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Escalation tick failed — retrying next interval")
            await asyncio.sleep(self._tick_seconds)
