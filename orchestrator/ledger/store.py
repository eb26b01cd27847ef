"""Incident ledger — durable append-only event log with an in-memory projection."""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from orchestrator.errors import (
    ActiveIncidentExists,
    ClaimConflict,
    IncidentNotFound,
    LedgerCorrupted,
    LedgerWriteFailure,
)
from orchestrator.ledger.events import LedgerEvent, LedgerEventKind, apply_event
from orchestrator.matching.patterns import Severity
from orchestrator.playbook.models import (
    EscalationEvent,
    Incident,
    IncidentStatus,
    Review,
    StepResult,
)

logger = logging.getLogger("orchestrator.ledger")


class IncidentFilter(BaseModel):
    statuses: set[IncidentStatus] | None = None
    pattern_id: str | None = None
    severity: Severity | None = None
    group_key: str | None = None
    opened_after: datetime | None = None
    opened_before: datetime | None = None
    closed_after: datetime | None = None
    closed_before: datetime | None = None
    limit: int | None = None

    def matches(self, incident: Incident) -> bool:
        if self.statuses is not None and incident.status not in self.statuses:
            return False
        if self.pattern_id is not None and incident.pattern_id != self.pattern_id:
            return False
        if self.severity is not None and incident.severity != self.severity:
            return False
        if self.group_key is not None and incident.group_key != self.group_key:
            return False
        if self.opened_after is not None and incident.opened_at < self.opened_after:
            return False
        if self.opened_before is not None and incident.opened_at >= self.opened_before:
            return False
        if self.closed_after is not None or self.closed_before is not None:
            if incident.closed_at is None:
                return False
            if self.closed_after is not None and incident.closed_at < self.closed_after:
                return False
            if self.closed_before is not None and incident.closed_at >= self.closed_before:
                return False
        return True


class IncidentLedger:
    """Single source of truth for incident state.

    Every append is written and fsync'd before the projection changes and before
    the caller gets control back, so an acknowledged event survives a crash.
    Claims are compare-and-swap tokens; they are recorded for audit but not
    restored on replay because the process that held them is gone.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.RLock()
        self._incidents: dict[str, Incident] = {}
        self._events: list[LedgerEvent] = []
        self._active_by_group: dict[str, str] = {}
        self._claims: dict[str, tuple[str, str]] = {}
        self._seq = 0

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._replay()

    @property
    def path(self) -> Path:
        return self._path

    # ── Replay ─────────────────────────────────────────────────────

    def _replay(self) -> None:
        if not self._path.exists():
            return

        raw = self._path.read_bytes()
        lines = raw.split(b"\n")
        good_bytes = 0
        for i, line in enumerate(lines):
            if not line.strip():
                good_bytes += len(line) + 1
                continue
            try:
                event = LedgerEvent.model_validate_json(line)
            except ValidationError as exc:
                if i == len(lines) - 1:
                    # Torn final write that was never acknowledged
                    logger.warning("Discarding torn ledger tail (%d bytes) in %s", len(line), self._path)
                    self._truncate(good_bytes)
                    break
                raise LedgerCorrupted(f"{self._path}: bad record on line {i + 1}") from exc

            self._commit(event, apply_event(self._incidents.get(event.incident_id), event))
            good_bytes += len(line) + 1

        logger.info(
            "Ledger replayed: %d events, %d incidents (%d active) from %s",
            len(self._events), len(self._incidents), len(self._active_by_group), self._path,
        )

    def _truncate(self, size: int) -> None:
        try:
            with open(self._path, "r+b") as f:
                f.truncate(size)
                f.flush()
                os.fsync(f.fileno())
        except OSError as exc:
            raise LedgerWriteFailure(f"cannot truncate torn tail of {self._path}: {exc}") from exc

    # ── Append path ────────────────────────────────────────────────

    def _write(self, event: LedgerEvent) -> None:
        line = event.model_dump_json() + "\n"
        try:
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
        except OSError as exc:
            raise LedgerWriteFailure(f"cannot append to {self._path}: {exc}") from exc

    def _commit(self, event: LedgerEvent, incident: Incident | None) -> None:
        self._seq = max(self._seq, event.seq)
        self._events.append(event)
        if incident is None:
            return
        self._incidents[incident.incident_id] = incident
        if incident.is_active:
            self._active_by_group[incident.group_key] = incident.incident_id
        elif self._active_by_group.get(incident.group_key) == incident.incident_id:
            del self._active_by_group[incident.group_key]

    def append(self, event: LedgerEvent) -> Incident | None:
        """Durably append an event and return the resulting incident state.

        Raises InvalidTransition without writing anything if the event is not legal,
        and LedgerWriteFailure if the write could not be made durable.
        """
        with self._lock:
            projected = apply_event(self._incidents.get(event.incident_id), event)
            event = event.model_copy(update={"seq": self._seq + 1})
            self._write(event)
            self._commit(event, projected)
            logger.debug("Ledger append: seq=%d kind=%s incident=%s",
                         event.seq, event.kind.value, event.incident_id)
            return projected.model_copy(deep=True) if projected else None

    # ── Incident operations ────────────────────────────────────────

    def open_incident(self, incident: Incident) -> Incident:
        with self._lock:
            existing = self._active_by_group.get(incident.group_key)
            if existing is not None:
                raise ActiveIncidentExists(incident.group_key, existing)
            return self.append(LedgerEvent(
                kind=LedgerEventKind.OPENED,
                incident_id=incident.incident_id,
                recorded_at=incident.opened_at,
                data={"incident": incident.model_dump(mode="json")},
            ))

    def transition(
        self,
        incident_id: str,
        status: IncidentStatus,
        *,
        reason: str = "",
        current_step_index: int | None = None,
        at: datetime | None = None,
    ) -> Incident:
        with self._lock:
            current = self._require(incident_id)
            data = {"from": current.status.value, "to": status.value, "reason": reason}
            if current_step_index is not None:
                data["current_step_index"] = current_step_index
            return self.append(LedgerEvent(
                kind=LedgerEventKind.TRANSITION,
                incident_id=incident_id,
                recorded_at=at or _now(),
                data=data,
            ))

    def record_step(self, incident_id: str, result: StepResult) -> Incident:
        return self.append(LedgerEvent(
            kind=LedgerEventKind.STEP,
            incident_id=incident_id,
            recorded_at=result.finished_at,
            data={"result": result.model_dump(mode="json")},
        ))

    def advance(self, incident_id: str, current_step_index: int) -> Incident:
        return self.append(LedgerEvent(
            kind=LedgerEventKind.ADVANCED,
            incident_id=incident_id,
            data={"current_step_index": current_step_index},
        ))

    def record_escalation(self, event: EscalationEvent) -> bool:
        """Append an escalation unless the incident already moved past ``from_level``."""
        with self._lock:
            current = self._require(event.incident_id)
            if not current.is_active or current.escalation_level != event.from_level:
                return False
            self.append(LedgerEvent(
                kind=LedgerEventKind.ESCALATION,
                incident_id=event.incident_id,
                recorded_at=event.triggered_at,
                data={"event": event.model_dump(mode="json")},
            ))
            return True

    def reopen(self, incident_id: str, signal_id: str = "", at: datetime | None = None) -> Incident:
        with self._lock:
            current = self._require(incident_id)
            existing = self._active_by_group.get(current.group_key)
            if existing is not None and existing != incident_id:
                raise ActiveIncidentExists(current.group_key, existing)
            return self.append(LedgerEvent(
                kind=LedgerEventKind.REOPENED,
                incident_id=incident_id,
                recorded_at=at or _now(),
                data={"signal_id": signal_id},
            ))

    def link_signal(self, incident_id: str, signal_id: str) -> Incident:
        return self.append(LedgerEvent(
            kind=LedgerEventKind.SIGNAL_LINKED,
            incident_id=incident_id,
            data={"signal_id": signal_id},
        ))

    def review(self, incident_id: str, review: Review) -> Incident:
        return self.append(LedgerEvent(
            kind=LedgerEventKind.REVIEWED,
            incident_id=incident_id,
            recorded_at=review.reviewed_at,
            data={"review": review.model_dump(mode="json")},
        ))

    # ── Claims ─────────────────────────────────────────────────────

    def claim(self, incident_id: str, owner: str) -> str:
        """Acquire the exclusive execution claim; returns the claim token.

        Raises ClaimConflict if another executor holds it. Never blocks.
        """
        with self._lock:
            self._require(incident_id)
            held = self._claims.get(incident_id)
            if held is not None:
                raise ClaimConflict(incident_id, held[0])
            token = uuid4().hex
            self.append(LedgerEvent(
                kind=LedgerEventKind.CLAIMED,
                incident_id=incident_id,
                data={"owner": owner, "token": token},
            ))
            self._claims[incident_id] = (owner, token)
            return token

    def release(self, incident_id: str, token: str) -> bool:
        with self._lock:
            held = self._claims.get(incident_id)
            if held is None or held[1] != token:
                logger.warning("Release with stale claim token ignored: incident=%s", incident_id)
                return False
            self.append(LedgerEvent(
                kind=LedgerEventKind.RELEASED,
                incident_id=incident_id,
                data={"owner": held[0], "token": token},
            ))
            del self._claims[incident_id]
            return True

    def claim_holder(self, incident_id: str) -> str | None:
        with self._lock:
            held = self._claims.get(incident_id)
            return held[0] if held else None

    # ── Reads ──────────────────────────────────────────────────────

    def _require(self, incident_id: str) -> Incident:
        incident = self._incidents.get(incident_id)
        if incident is None:
            raise IncidentNotFound(incident_id)
        return incident

    def get(self, incident_id: str) -> Incident:
        with self._lock:
            return self._require(incident_id).model_copy(deep=True)

    def query(self, filters: IncidentFilter | None = None) -> list[Incident]:
        """Incidents matching ``filters``, oldest first, as independent copies."""
        filters = filters or IncidentFilter()
        with self._lock:
            found = [i for i in self._incidents.values() if filters.matches(i)]
            found.sort(key=lambda i: i.opened_at)
            if filters.limit is not None:
                found = found[-filters.limit:] if filters.limit > 0 else []
            return [i.model_copy(deep=True) for i in found]

    def events(self, incident_id: str | None = None) -> list[LedgerEvent]:
        with self._lock:
            return [e for e in self._events if incident_id is None or e.incident_id == incident_id]

    def find_active(self, group_key: str) -> Incident | None:
        with self._lock:
            incident_id = self._active_by_group.get(group_key)
            return self._incidents[incident_id].model_copy(deep=True) if incident_id else None

    def find_reopenable(self, group_key: str, now: datetime, cooldown: timedelta) -> Incident | None:
        """Most recently closed succeeded incident for the group still inside the cool-down."""
        with self._lock:
            candidates = [
                i for i in self._incidents.values()
                if i.group_key == group_key
                and i.status == IncidentStatus.SUCCEEDED
                and i.closed_at is not None
                and timedelta(0) <= now - i.closed_at <= cooldown
            ]
            if not candidates:
                return None
            return max(candidates, key=lambda i: i.closed_at).model_copy(deep=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._incidents)


def _now() -> datetime:
    return datetime.now(timezone.utc)
