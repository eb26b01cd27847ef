"""Ledger event records and the projection that folds them into Incident state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from orchestrator.errors import InvalidTransition, LedgerCorrupted
from orchestrator.playbook.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    EscalationEvent,
    Incident,
    IncidentStatus,
    Review,
    StepOutcome,
    StepResult,
)


class LedgerEventKind(str, Enum):
    OPENED = "incident_opened"
    TRANSITION = "status_changed"
    STEP = "step_recorded"
    ADVANCED = "step_advanced"
    ESCALATION = "escalated"
    REOPENED = "incident_reopened"
    SIGNAL_LINKED = "signal_linked"
    REVIEWED = "incident_reviewed"
    CLAIMED = "claim_acquired"
    RELEASED = "claim_released"


class LedgerEvent(BaseModel):
    seq: int = 0
    kind: LedgerEventKind
    incident_id: str
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: dict = {}


def apply_event(incident: Incident | None, event: LedgerEvent) -> Incident | None:
    """Return the incident state after ``event``. The input is never mutated.

    Raises InvalidTransition when the event is not legal for the current state.
    """
    kind = event.kind
    at = event.recorded_at

    if kind == LedgerEventKind.OPENED:
        if incident is not None:
            raise LedgerCorrupted(f"incident {event.incident_id} opened twice")
        return Incident.model_validate(event.data["incident"])

    if incident is None:
        raise LedgerCorrupted(f"{kind.value} for unknown incident {event.incident_id}")

    if kind in (LedgerEventKind.CLAIMED, LedgerEventKind.RELEASED):
        return incident

    updated = incident.model_copy(deep=True)

    if kind == LedgerEventKind.TRANSITION:
        target = IncidentStatus(event.data["to"])
        if target not in ALLOWED_TRANSITIONS[incident.status]:
            raise InvalidTransition(incident.incident_id, incident.status.value, target.value)
        new_index = event.data.get("current_step_index")
        if new_index is not None:
            if new_index < incident.current_step_index:
                raise InvalidTransition(
                    incident.incident_id,
                    f"step {incident.current_step_index}",
                    f"step {new_index}",
                )
            updated.current_step_index = new_index
        updated.status = target
        if target in TERMINAL_STATUSES:
            updated.closed_at = at
        if target == IncidentStatus.ESCALATED:
            updated.manual_intervention = True
        return updated

    if kind in (LedgerEventKind.STEP, LedgerEventKind.ADVANCED) and not incident.is_active:
        # step history is final once the incident is closed
        raise InvalidTransition(incident.incident_id, incident.status.value, kind.value)

    if kind == LedgerEventKind.STEP:
        result = StepResult.model_validate(event.data["result"])
        updated.step_history.append(result)
        if result.outcome == StepOutcome.SUCCESS and updated.mitigated_at is None:
            updated.mitigated_at = result.finished_at
        if result.manual:
            updated.manual_intervention = True
        return updated

    if kind == LedgerEventKind.ADVANCED:
        new_index = event.data["current_step_index"]
        if incident.status != IncidentStatus.RUNNING or new_index < incident.current_step_index:
            raise InvalidTransition(
                incident.incident_id,
                f"{incident.status.value} at step {incident.current_step_index}",
                f"step {new_index}",
            )
        updated.current_step_index = new_index
        return updated

    if kind == LedgerEventKind.ESCALATION:
        escalation = EscalationEvent.model_validate(event.data["event"])
        if escalation.from_level != incident.escalation_level:
            raise InvalidTransition(
                incident.incident_id,
                f"level {incident.escalation_level}",
                f"level {escalation.to_level}",
            )
        updated.escalation_level = escalation.to_level
        updated.escalations.append(escalation)
        return updated

    if kind == LedgerEventKind.REOPENED:
        if incident.status != IncidentStatus.SUCCEEDED:
            raise InvalidTransition(incident.incident_id, incident.status.value, "reopened")
        updated.status = IncidentStatus.RUNNING
        updated.cycle += 1
        updated.current_step_index = 0
        updated.reopened_at = at
        updated.mitigated_at = None
        updated.closed_at = None
        signal_id = event.data.get("signal_id")
        if signal_id:
            updated.signal_ids.append(signal_id)
        return updated

    if kind == LedgerEventKind.SIGNAL_LINKED:
        updated.signal_ids.append(event.data["signal_id"])
        return updated

    if kind == LedgerEventKind.REVIEWED:
        if incident.status not in TERMINAL_STATUSES:
            raise InvalidTransition(
                incident.incident_id, incident.status.value, IncidentStatus.REVIEWED.value
            )
        updated.resolved_status = incident.status
        updated.status = IncidentStatus.REVIEWED
        updated.review = Review.model_validate(event.data["review"])
        return updated

    raise LedgerCorrupted(f"unhandled ledger event kind: {kind}")
