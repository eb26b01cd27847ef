"""Signal submission endpoint."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, HTTPException, Request

from orchestrator.errors import MalformedSignal
from orchestrator.telemetry.metrics import signals_rejected_total

logger = logging.getLogger("orchestrator.ingestion")
router = APIRouter(prefix="/signals", tags=["ingestion"])


@router.post("", status_code=202)
async def submit_signal(request: Request, payload: Any = Body(...)):
    """Accept a monitoring signal, store it for correlation and queue it for matching."""
    orchestrator = request.app.state.orchestrator
    try:
        signal, stored = orchestrator.ingest(payload)
    except MalformedSignal as exc:
        signals_rejected_total.inc()
        logger.warning("Malformed signal rejected: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if stored:
        try:
            await request.app.state.dispatch(signal)
        except Exception:
            # Not processed, so a retry of the same id must not count as a duplicate
            orchestrator.retract(signal)
            raise

    return {"id": signal.id, "accepted": stored}
