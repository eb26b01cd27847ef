"""Incident, step result and escalation records."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict

from orchestrator.matching.patterns import Severity


class IncidentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    ESCALATED = "escalated"  # waiting at the current step for a manual resolution
    SUCCEEDED = "succeeded"
    ABORTED = "aborted"
    REVIEWED = "reviewed"


class Lifecycle(str, Enum):
    DETECTED = "detected"
    IN_PROGRESS = "in_progress"
    MITIGATED = "mitigated"
    RESOLVED = "resolved"
    ABORTED = "aborted"
    REVIEWED = "reviewed"


ACTIVE_STATUSES = frozenset({
    IncidentStatus.PENDING,
    IncidentStatus.RUNNING,
    IncidentStatus.RETRYING,
    IncidentStatus.ESCALATED,
})

TERMINAL_STATUSES = frozenset({IncidentStatus.SUCCEEDED, IncidentStatus.ABORTED})

# succeeded -> running is not listed: it only happens through a reopen event.
ALLOWED_TRANSITIONS: dict[IncidentStatus, frozenset[IncidentStatus]] = {
    IncidentStatus.PENDING: frozenset({IncidentStatus.RUNNING, IncidentStatus.ABORTED}),
    IncidentStatus.RUNNING: frozenset({
        IncidentStatus.RETRYING,
        IncidentStatus.ESCALATED,
        IncidentStatus.SUCCEEDED,
        IncidentStatus.ABORTED,
    }),
    IncidentStatus.RETRYING: frozenset({IncidentStatus.RUNNING, IncidentStatus.ABORTED}),
    IncidentStatus.ESCALATED: frozenset({IncidentStatus.RUNNING, IncidentStatus.ABORTED}),
    IncidentStatus.SUCCEEDED: frozenset({IncidentStatus.REVIEWED}),
    IncidentStatus.ABORTED: frozenset({IncidentStatus.REVIEWED}),
    IncidentStatus.REVIEWED: frozenset(),
}


class StepOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class StepResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: str
    step_index: int
    cycle: int = 1
    attempt_number: int
    outcome: StepOutcome
    started_at: datetime
    finished_at: datetime
    detail: str = ""
    manual: bool = False


class EscalationEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    incident_id: str
    from_tier: str
    to_tier: str
    from_level: int
    to_level: int
    triggered_at: datetime
    reason: str


class Review(BaseModel):
    model_config = ConfigDict(frozen=True)

    reviewed_at: datetime
    reviewer: str = ""
    false_positive: bool = False
    notes: str = ""


class Incident(BaseModel):
    incident_id: str
    pattern_id: str
    severity: Severity
    status: IncidentStatus = IncidentStatus.PENDING
    group_key: str
    labels: dict[str, str] = {}
    signal_ids: list[str] = []
    opened_at: datetime
    reopened_at: datetime | None = None
    mitigated_at: datetime | None = None
    closed_at: datetime | None = None
    current_step_index: int = 0
    cycle: int = 1
    step_history: list[StepResult] = []
    escalation_level: int = 0
    escalations: list[EscalationEvent] = []
    manual_intervention: bool = False
    resolved_status: IncidentStatus | None = None  # terminal playbook status, kept after review
    review: Review | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def clock_start(self) -> datetime:
        return self.reopened_at or self.opened_at

    @property
    def lifecycle(self) -> Lifecycle:
        if self.status == IncidentStatus.PENDING:
            return Lifecycle.DETECTED
        if self.status in ACTIVE_STATUSES:
            return Lifecycle.MITIGATED if self.mitigated_at else Lifecycle.IN_PROGRESS
        if self.status == IncidentStatus.SUCCEEDED:
            return Lifecycle.RESOLVED
        if self.status == IncidentStatus.ABORTED:
            return Lifecycle.ABORTED
        return Lifecycle.REVIEWED

    @property
    def was_resolved(self) -> bool:
        """Playbook finished successfully (before or after review)."""
        return IncidentStatus.SUCCEEDED in (self.status, self.resolved_status)

    def attempts_for(self, step_index: int) -> int:
        """Attempts recorded for a step within the current cycle."""
        return sum(
            1 for r in self.step_history
            if r.step_index == step_index and r.cycle == self.cycle
        )

    def summary(self) -> dict:
        return {
            "incident_id": self.incident_id,
            "pattern_id": self.pattern_id,
            "severity": self.severity.value,
            "status": self.status.value,
            "lifecycle": self.lifecycle.value,
            "escalation_level": self.escalation_level,
            "current_step_index": self.current_step_index,
            "opened_at": self.opened_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }
