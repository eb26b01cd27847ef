"""Incident query and operator endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel

from orchestrator.ledger.store import IncidentFilter
from orchestrator.matching.patterns import Severity
from orchestrator.playbook.models import Incident, IncidentStatus

logger = logging.getLogger("orchestrator.api")
router = APIRouter(prefix="/incidents", tags=["incidents"])


class ResolveStepRequest(BaseModel):
    detail: str = ""
    operator: str = ""


class AbortRequest(BaseModel):
    reason: str = ""
    operator: str = ""


class ReviewRequest(BaseModel):
    false_positive: bool = False
    notes: str = ""
    reviewer: str = ""


def render(incident: Incident) -> dict:
    body = incident.model_dump(mode="json")
    body["lifecycle"] = incident.lifecycle.value
    return body


@router.get("")
async def list_incidents(
    request: Request,
    status: list[IncidentStatus] | None = Query(default=None),
    pattern_id: str | None = None,
    severity: Severity | None = None,
    limit: int = Query(default=50, ge=1, le=1000),
):
    ledger = request.app.state.orchestrator.ledger
    incidents = ledger.query(IncidentFilter(
        statuses=set(status) if status else None,
        pattern_id=pattern_id,
        severity=severity,
        limit=limit,
    ))
    return {"incidents": [i.summary() for i in incidents], "count": len(incidents)}


@router.get("/{incident_id}")
async def get_incident(request: Request, incident_id: str):
    return render(request.app.state.orchestrator.ledger.get(incident_id))


@router.get("/{incident_id}/events")
async def get_incident_events(request: Request, incident_id: str):
    ledger = request.app.state.orchestrator.ledger
    ledger.get(incident_id)
    return {"events": [e.model_dump(mode="json") for e in ledger.events(incident_id)]}


@router.post("/{incident_id}/resolve-step", status_code=202)
async def resolve_step(request: Request, incident_id: str, body: ResolveStepRequest):
    """Signal that the escalated step was fixed by hand; the playbook resumes."""
    incident = request.app.state.orchestrator.resolve_step(incident_id, body.detail, body.operator)
    return {"incident_id": incident.incident_id, "resuming_step": incident.current_step_index}


@router.post("/{incident_id}/abort")
async def abort_incident(request: Request, incident_id: str, body: AbortRequest):
    incident = request.app.state.orchestrator.abort(incident_id, body.reason, body.operator)
    return render(incident)


@router.post("/{incident_id}/review")
async def review_incident(request: Request, incident_id: str, body: ReviewRequest):
    incident = request.app.state.orchestrator.review(
        incident_id,
        false_positive=body.false_positive,
        notes=body.notes,
        reviewer=body.reviewer,
    )
    return render(incident)
