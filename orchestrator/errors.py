"""Error kinds raised across the orchestrator."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""


class MalformedSignal(OrchestratorError):
    """Inbound event is missing its timestamp or metric identity."""


class PatternConfigError(OrchestratorError):
    """Pattern or escalation configuration could not be loaded."""


class StepFailure(OrchestratorError):
    """A remediation action reported failure."""


class StepTimeout(StepFailure):
    """A remediation action did not finish within its step timeout."""


class ActionExecutorUnavailable(StepFailure):
    """The action executor could not be reached or has no handler for the action."""


class ClaimConflict(OrchestratorError):
    """Another executor already holds the claim on this incident."""

    def __init__(self, incident_id: str, holder: str) -> None:
        super().__init__(f"Incident {incident_id} is claimed by {holder}")
        self.incident_id = incident_id
        self.holder = holder


class LedgerWriteFailure(OrchestratorError):
    """An event could not be made durable; the operation must not proceed."""


class IncidentNotFound(OrchestratorError):
    def __init__(self, incident_id: str) -> None:
        super().__init__(f"Incident not found: {incident_id}")
        self.incident_id = incident_id


class InvalidTransition(OrchestratorError):
    def __init__(self, incident_id: str, current: str, target: str) -> None:
        super().__init__(f"Incident {incident_id} cannot move from {current} to {target}")
        self.incident_id = incident_id
        self.current = current
        self.target = target


class ActiveIncidentExists(OrchestratorError):
    """A correlated signal group already has an active incident."""

    def __init__(self, group_key: str, incident_id: str) -> None:
        super().__init__(f"Group {group_key} already has active incident {incident_id}")
        self.group_key = group_key
        self.incident_id = incident_id


class LedgerCorrupted(OrchestratorError):
    """A ledger record other than a torn final line could not be parsed."""
