"""Prometheus exposition and ledger-derived metrics snapshots."""

from fastapi import APIRouter, Query, Request
from starlette.responses import Response

from orchestrator.reporting.models import Period
from orchestrator.telemetry.metrics import get_metrics

router = APIRouter(tags=["metrics"])


@router.get("/metrics", include_in_schema=False)
async def metrics():
    body, content_type = get_metrics()
    return Response(content=body, media_type=content_type)


@router.get("/metrics/snapshot")
async def metrics_snapshot(request: Request, hours: float = Query(default=24.0, gt=0)):
    """MTTR, MTBF per pattern, runbook effectiveness and false-positive rate for the last ``hours``."""
    snapshot = request.app.state.orchestrator.metrics(Period.last(hours))
    return snapshot.model_dump(mode="json")
