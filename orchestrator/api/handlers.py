"""Map orchestrator errors onto HTTP responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from orchestrator.errors import (
    ActiveIncidentExists,
    ClaimConflict,
    IncidentNotFound,
    InvalidTransition,
    LedgerWriteFailure,
)

logger = logging.getLogger("orchestrator.api")


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(IncidentNotFound)
    async def _not_found(request: Request, exc: IncidentNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransition)
    @app.exception_handler(ClaimConflict)
    @app.exception_handler(ActiveIncidentExists)
    async def _conflict(request: Request, exc: Exception):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(LedgerWriteFailure)
    async def _ledger_failure(request: Request, exc: LedgerWriteFailure):
        logger.error("Ledger write failed during %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "ledger unavailable, retry the request"})
