"""Metrics aggregator — MTTR, MTBF, runbook effectiveness and false-positive rate from the ledger."""

from __future__ import annotations

import logging
from collections import defaultdict
from statistics import fmean

from orchestrator.ledger.events import LedgerEventKind
from orchestrator.ledger.store import IncidentLedger
from orchestrator.playbook.models import Incident
from orchestrator.reporting.models import MetricsSnapshot, Period

logger = logging.getLogger("orchestrator.reporting")


def _pct(part: int, whole: int) -> float | None:
    return round(100.0 * part / whole, 2) if whole else None


class MetricsAggregator:
    """Read-only computations over ledger snapshots. Safe to run alongside ingestion."""

    def __init__(self, ledger: IncidentLedger) -> None:
        self._ledger = ledger

    def compute(self, period: Period) -> MetricsSnapshot:
        incidents = self._ledger.query()

        opened = [i for i in incidents if period.contains(i.opened_at)]
        resolved = [i for i in incidents if i.was_resolved and period.contains(i.closed_at)]

        durations = [(i.closed_at - i.opened_at).total_seconds() for i in resolved]
        mttr = round(fmean(durations), 3) if durations else None

        effective = sum(1 for i in resolved if not i.manual_intervention)
        false_positives = sum(1 for i in opened if i.review is not None and i.review.false_positive)

        snapshot = MetricsSnapshot(
            period_start=period.start,
            period_end=period.end,
            incident_count=len(opened),
            resolved_count=len(resolved),
            mttr_seconds=mttr,
            mtbf_by_type=self._mtbf_by_type(incidents, period),
            runbook_effectiveness_pct=_pct(effective, len(resolved)),
            false_positive_pct=_pct(false_positives, len(opened)),
        )
        logger.debug("Metrics computed: incidents=%d resolved=%d mttr=%s",
                     snapshot.incident_count, snapshot.resolved_count, snapshot.mttr_seconds)
        return snapshot

    def _mtbf_by_type(self, incidents: list[Incident], period: Period) -> dict[str, float | None]:
        """Mean gap between consecutive occurrences (opens and reopens) per pattern."""
        reopens = defaultdict(list)
        for event in self._ledger.events():
            if event.kind == LedgerEventKind.REOPENED:
                reopens[event.incident_id].append(event.recorded_at)

        occurrences = defaultdict(list)
        for incident in incidents:
            for ts in [incident.opened_at, *reopens[incident.incident_id]]:
                if period.contains(ts):
                    occurrences[incident.pattern_id].append(ts)

        result: dict[str, float | None] = {}
        for pattern_id, times in sorted(occurrences.items()):
            times.sort()
            gaps = [(b - a).total_seconds() for a, b in zip(times, times[1:])]
            result[pattern_id] = round(fmean(gaps), 3) if gaps else None
        return result

