"""Pattern matcher — select the incident pattern a signal belongs to."""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from orchestrator.errors import PatternConfigError
from orchestrator.ingestion.models import Signal
from orchestrator.matching.patterns import IncidentPattern
from orchestrator.telemetry.metrics import signals_unclassified_total

logger = logging.getLogger("orchestrator.matching")


class PatternRegistry:
    """Registered patterns in evaluation order: severity first, then registration order."""

    def __init__(self, patterns: Iterable[IncidentPattern] = ()) -> None:
        self._patterns: list[IncidentPattern] = []
        self._by_id: dict[str, IncidentPattern] = {}
        for p in patterns:
            self.register(p)

    def register(self, pattern: IncidentPattern) -> None:
        if pattern.pattern_id in self._by_id:
            raise PatternConfigError(f"Duplicate pattern_id: {pattern.pattern_id}")
        self._patterns.append(pattern)
        self._by_id[pattern.pattern_id] = pattern

    def get(self, pattern_id: str) -> IncidentPattern | None:
        return self._by_id.get(pattern_id)

    def ordered(self) -> list[IncidentPattern]:
        # sorted() is stable, so ties keep registration order
        return sorted(self._patterns, key=lambda p: p.severity.rank)

    def __len__(self) -> int:
        return len(self._patterns)

    def __iter__(self):
        return iter(self._patterns)


class PatternMatcher:
    def __init__(self, registry: PatternRegistry) -> None:
        self._registry = registry

    def match(self, signal: Signal, window: Sequence[Signal] = ()) -> IncidentPattern | None:
        """Return the first pattern whose predicate holds, or None.

        Side-effect free apart from logging; the same signal and window always
        produce the same answer.
        """
        for pattern in self._registry.ordered():
            if pattern.match_predicate.evaluate(signal, window):
                logger.info(
                    "Signal matched: id=%s pattern=%s severity=%s",
                    signal.id, pattern.pattern_id, pattern.severity.value,
                )
                return pattern

        signals_unclassified_total.inc()
        logger.info(
            "Signal unclassified: id=%s source=%s metric=%s",
            signal.id, signal.source, signal.metric_name,
        )
        return None
