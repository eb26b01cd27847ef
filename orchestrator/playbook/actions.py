"""Action executors — the boundary where remediation commands actually run.

The engine only sees an ``action_ref`` and a ``success|failure|timeout`` outcome.
Cloud-specific mechanics (IAM, scaling, cache failover, ...) live behind this
boundary, either as in-process handlers or in a remote executor service.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Protocol

import httpx
from pydantic import BaseModel

from orchestrator.errors import ActionExecutorUnavailable
from orchestrator.playbook.models import Incident, StepOutcome

logger = logging.getLogger("orchestrator.playbook.actions")


class ActionResult(BaseModel):
    outcome: StepOutcome
    detail: str = ""


class ActionContext(BaseModel):
    """What an action handler gets to know about the incident it acts on."""

    incident_id: str
    pattern_id: str
    severity: str
    step_id: str
    attempt_number: int
    labels: dict[str, str] = {}

    @classmethod
    def for_step(cls, incident: Incident, step_id: str, attempt_number: int) -> "ActionContext":
        return cls(
            incident_id=incident.incident_id,
            pattern_id=incident.pattern_id,
            severity=incident.severity.value,
            step_id=step_id,
            attempt_number=attempt_number,
            labels=incident.labels,
        )


ActionHandler = Callable[[ActionContext], Awaitable[ActionResult]]


class ActionExecutor(Protocol):
    async def execute(self, action_ref: str, context: ActionContext) -> ActionResult:
        """Run an action.

        May raise ActionExecutorUnavailable when the executor cannot be reached,
        StepTimeout when the action ran out of time on the executor side, or
        StepFailure for any other failed run.
        """
        ...


class HttpActionExecutor:
    """Delegates actions to a remote executor service: POST {base_url}/actions/{action_ref}."""

    def __init__(self, base_url: str, timeout: float = 30.0) -> None:
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def close(self) -> None:
        await self._http.aclose()

    async def execute(self, action_ref: str, context: ActionContext) -> ActionResult:
        try:
            resp = await self._http.post(f"/actions/{action_ref}", json=context.model_dump())
        except httpx.TimeoutException:
            return ActionResult(outcome=StepOutcome.TIMEOUT, detail="executor request timed out")
        except httpx.TransportError as exc:
            raise ActionExecutorUnavailable(f"action executor unreachable: {exc}") from exc

        if resp.status_code >= 500 or resp.status_code == 404:
            raise ActionExecutorUnavailable(
                f"action executor returned {resp.status_code} for {action_ref}"
            )
        if resp.status_code >= 400:
            return ActionResult(
                outcome=StepOutcome.FAILURE,
                detail=f"executor rejected {action_ref}: HTTP {resp.status_code}",
            )

        body = resp.json()
        try:
            outcome = StepOutcome(body.get("outcome", ""))
        except ValueError:
            return ActionResult(
                outcome=StepOutcome.FAILURE,
                detail=f"executor returned unknown outcome {body.get('outcome')!r}",
            )
        return ActionResult(outcome=outcome, detail=str(body.get("detail", "")))


class ActionRegistry:
    """In-process action handlers keyed by ``action_ref``, with an optional remote fallback."""

    def __init__(self, fallback: ActionExecutor | None = None) -> None:
        self._handlers: dict[str, ActionHandler] = {}
        self._fallback = fallback

    def register(self, action_ref: str, handler: ActionHandler) -> None:
        self._handlers[action_ref] = handler

    def action(self, action_ref: str):
        """Decorator form of ``register``."""

        def decorator(fn: ActionHandler) -> ActionHandler:
            self.register(action_ref, fn)
            return fn

        return decorator

    def __contains__(self, action_ref: str) -> bool:
        return action_ref in self._handlers

    async def execute(self, action_ref: str, context: ActionContext) -> ActionResult:
        handler = self._handlers.get(action_ref)
        if handler is not None:
            return await handler(context)
        if self._fallback is not None:
            return await self._fallback.execute(action_ref, context)
        raise ActionExecutorUnavailable(f"no handler registered for action {action_ref}")
