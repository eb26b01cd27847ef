"""Declarative incident patterns, remediation steps and match predicates."""

from __future__ import annotations

import operator
from datetime import timedelta
from enum import Enum
from typing import Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

from orchestrator.ingestion.models import Signal


class Severity(str, Enum):
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"

    @property
    def rank(self) -> int:
        return int(self.value[1])


class OnFailure(str, Enum):
    RETRY = "retry"
    ESCALATE = "escalate"
    ABORT = "abort"


class Comparison(str, Enum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    NE = "ne"


_COMPARATORS = {
    Comparison.GT: operator.gt,
    Comparison.GTE: operator.ge,
    Comparison.LT: operator.lt,
    Comparison.LTE: operator.le,
    Comparison.EQ: operator.eq,
    Comparison.NE: operator.ne,
}


class RemediationStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: str
    action_ref: str
    timeout: float = Field(default=60.0, gt=0)
    max_retries: int = Field(default=0, ge=0)
    on_failure: OnFailure = OnFailure.ABORT


class MatchPredicate(BaseModel):
    """Conditions a signal (and its correlation window) must meet.

    ``min_occurrences`` counts signals for the same (source, metric_name) within
    ``within_seconds`` before the current one, the current signal included,
    that also satisfy the threshold comparison.
    """

    model_config = ConfigDict(frozen=True)

    metric_name: str
    source: str | None = None
    labels: dict[str, str] = {}
    operator: Comparison = Comparison.GT
    threshold: float | None = None
    min_occurrences: int = Field(default=1, ge=1)
    within_seconds: int = Field(default=600, gt=0)

    def _accepts(self, signal: Signal) -> bool:
        if signal.metric_name != self.metric_name:
            return False
        if self.source is not None and signal.source != self.source:
            return False
        for key, value in self.labels.items():
            if signal.labels.get(key) != value:
                return False
        if self.threshold is not None:
            return _COMPARATORS[self.operator](signal.value, self.threshold)
        return True

    def evaluate(self, signal: Signal, window: Sequence[Signal] = ()) -> bool:
        if not self._accepts(signal):
            return False
        if self.min_occurrences == 1:
            return True

        since = signal.timestamp - timedelta(seconds=self.within_seconds)
        seen = {signal.id}
        count = 1
        for other in window:
            if other.id in seen or other.window_key != signal.window_key:
                continue
            if since <= other.timestamp <= signal.timestamp and self._accepts(other):
                seen.add(other.id)
                count += 1
                if count >= self.min_occurrences:
                    return True
        return False


class IncidentPattern(BaseModel):
    model_config = ConfigDict(frozen=True)

    pattern_id: str
    description: str = ""
    match_predicate: MatchPredicate
    severity: Severity
    steps: tuple[RemediationStep, ...]
    response_time_sla: timedelta | None = None
    group_by: tuple[str, ...] = ()

    @field_validator("steps")
    @classmethod
    def _steps_not_empty(cls, v: tuple[RemediationStep, ...]) -> tuple[RemediationStep, ...]:
        if not v:
            raise ValueError("a pattern needs at least one remediation step")
        ids = [s.step_id for s in v]
        if len(set(ids)) != len(ids):
            raise ValueError("step_id values must be unique within a pattern")
        return v

    def group_labels(self, signal: Signal) -> dict[str, str]:
        return {k: signal.labels[k] for k in self.group_by if k in signal.labels}

    def group_key(self, signal: Signal) -> str:
        """Identity of the correlated signal group (root cause) this signal belongs to."""
        parts = ",".join(f"{k}={v}" for k, v in sorted(self.group_labels(signal).items()))
        return f"{self.pattern_id}|{parts}"
