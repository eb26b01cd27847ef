"""Playbook engine — drives an incident's remediation steps as a resumable state machine.

    pending -> running -> {succeeded, retrying, escalated, aborted}
    retrying -> running          (after backoff)
    escalated -> running         (step resolved manually)
    succeeded -> running         (reopen, new cycle)

All state lives in the ledger. The engine only holds a claim token while it
drives an incident, so a crashed engine leaves nothing behind that ``recover``
cannot pick up again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable
from uuid import uuid4

from opentelemetry import trace

from orchestrator.config import settings
from orchestrator.errors import (
    ActionExecutorUnavailable,
    ClaimConflict,
    InvalidTransition,
    PatternConfigError,
    StepFailure,
    StepTimeout,
)
from orchestrator.ingestion.models import Signal
from orchestrator.ledger.store import IncidentFilter, IncidentLedger
from orchestrator.matching.matcher import PatternRegistry
from orchestrator.matching.patterns import IncidentPattern, OnFailure, RemediationStep
from orchestrator.playbook.actions import ActionContext, ActionExecutor
from orchestrator.playbook.models import (
    Incident,
    IncidentStatus,
    StepOutcome,
    StepResult,
)
from orchestrator.telemetry.metrics import (
    incidents_closed_total,
    incidents_opened_total,
    incidents_reopened_total,
    step_duration,
    step_outcomes_total,
)

if TYPE_CHECKING:
    from orchestrator.escalation.scheduler import EscalationScheduler

logger = logging.getLogger("orchestrator.playbook")
tracer = trace.get_tracer(__name__)

_RUNNABLE = {IncidentStatus.PENDING, IncidentStatus.RUNNING, IncidentStatus.RETRYING}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlaybookEngine:
    def __init__(
        self,
        ledger: IncidentLedger,
        patterns: PatternRegistry,
        executor: ActionExecutor,
        escalation: EscalationScheduler | None = None,
        *,
        owner: str | None = None,
        backoff_base: float | None = None,
        backoff_cap: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ledger = ledger
        self._patterns = patterns
        self._executor = executor
        self._escalation = escalation
        self.owner = owner or f"engine-{uuid4().hex[:8]}"
        self._backoff_base = settings.retry_backoff_base_seconds if backoff_base is None else backoff_base
        self._backoff_cap = settings.retry_backoff_cap_seconds if backoff_cap is None else backoff_cap
        self._sleep = sleep
        self._clock = clock

    def backoff_delay(self, attempt_number: int) -> float:
        """Exponential backoff, base 2, capped."""
        return min(self._backoff_base * 2 ** (attempt_number - 1), self._backoff_cap)

    def _pattern_for(self, incident: Incident) -> IncidentPattern:
        pattern = self._patterns.get(incident.pattern_id)
        if pattern is None:
            raise PatternConfigError(
                f"incident {incident.incident_id} references unknown pattern {incident.pattern_id}"
            )
        return pattern

    # ── Incident creation ──────────────────────────────────────────

    def open_incident(self, pattern: IncidentPattern, signal: Signal) -> Incident:
        """Create a pending incident for a matched signal.

        Raises ActiveIncidentExists if the signal's group already has one.
        """
        incident = self._ledger.open_incident(Incident(
            incident_id=uuid4().hex[:12],
            pattern_id=pattern.pattern_id,
            severity=pattern.severity,
            group_key=pattern.group_key(signal),
            labels=dict(signal.labels),
            signal_ids=[signal.id],
            opened_at=self._clock(),
        ))
        incidents_opened_total.labels(
            pattern_id=pattern.pattern_id, severity=pattern.severity.value
        ).inc()
        logger.info(
            "Incident opened: id=%s pattern=%s severity=%s group=%s signal=%s",
            incident.incident_id, pattern.pattern_id, pattern.severity.value,
            incident.group_key, signal.id,
        )
        if self._escalation:
            self._escalation.schedule(incident)
        return incident

    def reopen_incident(self, incident_id: str, signal: Signal) -> Incident:
        """Start a new remediation cycle on a recently succeeded incident."""
        incident = self._ledger.reopen(incident_id, signal_id=signal.id, at=self._clock())
        incidents_reopened_total.labels(pattern_id=incident.pattern_id).inc()
        logger.warning(
            "Incident reopened: id=%s pattern=%s cycle=%d signal=%s",
            incident_id, incident.pattern_id, incident.cycle, signal.id,
        )
        if self._escalation:
            self._escalation.schedule(incident)
        return incident

    # ── Execution ──────────────────────────────────────────────────

    async def run(self, incident_id: str) -> Incident:
        """Claim an incident and drive its playbook as far as it can go.

        Raises ClaimConflict if another executor holds the claim.
        """
        token = self._ledger.claim(incident_id, self.owner)
        try:
            return await self._drive(incident_id)
        finally:
            self._ledger.release(incident_id, token)

    async def _drive(self, incident_id: str) -> Incident:
        incident = self._ledger.get(incident_id)
        pattern = self._pattern_for(incident)

        if incident.status not in _RUNNABLE:
            logger.info("Incident not runnable: id=%s status=%s", incident_id, incident.status.value)
            return incident

        try:
            if incident.status != IncidentStatus.RUNNING:
                incident = self._ledger.transition(
                    incident_id, IncidentStatus.RUNNING, reason="claimed by " + self.owner,
                    at=self._clock(),
                )

            while incident.status == IncidentStatus.RUNNING:
                index = incident.current_step_index
                if index >= len(pattern.steps):
                    incident = self._complete(incident, len(pattern.steps))
                    break

                step = pattern.steps[index]
                attempt = incident.attempts_for(index) + 1
                result, unavailable = await self._attempt(incident, step, index, attempt)
                if not self._ledger.get(incident_id).is_active:
                    logger.warning(
                        "Incident closed during step, result discarded: id=%s step=%s outcome=%s",
                        incident_id, step.step_id, result.outcome.value,
                    )
                    return self._ledger.get(incident_id)
                incident = self._ledger.record_step(incident_id, result)
                if incident.status != IncidentStatus.RUNNING:
                    break

                if result.outcome == StepOutcome.SUCCESS:
                    incident = self._advance(incident, pattern)
                else:
                    incident = await self._handle_failure(incident, step, attempt, unavailable)
        except InvalidTransition:
            current = self._ledger.get(incident_id)
            if current.is_active:
                raise
            logger.warning(
                "Incident closed while its playbook was running: id=%s status=%s",
                incident_id, current.status.value,
            )
            return current

        return incident

    async def _attempt(
        self, incident: Incident, step: RemediationStep, index: int, attempt: int
    ) -> tuple[StepResult, bool]:
        """Execute one attempt of a step. Returns the result and whether the executor was unavailable."""
        started = self._clock()
        context = ActionContext.for_step(incident, step.step_id, attempt)
        unavailable = False

        with tracer.start_as_current_span("playbook.step") as span:
            span.set_attribute("incident.id", incident.incident_id)
            span.set_attribute("step.id", step.step_id)
            span.set_attribute("step.action_ref", step.action_ref)
            span.set_attribute("step.attempt", attempt)

            t0 = time.perf_counter()
            try:
                action = await asyncio.wait_for(
                    self._executor.execute(step.action_ref, context), timeout=step.timeout
                )
                outcome, detail = action.outcome, action.detail
            except asyncio.TimeoutError:
                outcome, detail = StepOutcome.TIMEOUT, f"no result within {step.timeout:g}s"
            except ActionExecutorUnavailable as exc:
                outcome, detail, unavailable = StepOutcome.FAILURE, str(exc), True
            except StepTimeout as exc:
                outcome, detail = StepOutcome.TIMEOUT, str(exc)
            except StepFailure as exc:
                outcome, detail = StepOutcome.FAILURE, str(exc)
            except Exception as exc:
                logger.exception(
                    "Action raised: incident=%s step=%s action=%s",
                    incident.incident_id, step.step_id, step.action_ref,
                )
                outcome, detail = StepOutcome.FAILURE, f"{type(exc).__name__}: {exc}"
            elapsed = time.perf_counter() - t0

            span.set_attribute("step.outcome", outcome.value)

        step_duration.labels(action_ref=step.action_ref).observe(elapsed)
        step_outcomes_total.labels(action_ref=step.action_ref, outcome=outcome.value).inc()
        logger.info(
            "Step attempt: incident=%s step=%s attempt=%d outcome=%s (%.2fs) %s",
            incident.incident_id, step.step_id, attempt, outcome.value, elapsed, detail,
        )

        return StepResult(
            step_id=step.step_id,
            step_index=index,
            cycle=incident.cycle,
            attempt_number=attempt,
            outcome=outcome,
            started_at=started,
            finished_at=self._clock(),
            detail=detail,
        ), unavailable

    def _advance(self, incident: Incident, pattern: IncidentPattern) -> Incident:
        next_index = incident.current_step_index + 1
        if next_index >= len(pattern.steps):
            return self._complete(incident, next_index)
        return self._ledger.advance(incident.incident_id, next_index)

    def _complete(self, incident: Incident, final_index: int) -> Incident:
        incident = self._ledger.transition(
            incident.incident_id,
            IncidentStatus.SUCCEEDED,
            reason="playbook completed",
            current_step_index=final_index,
            at=self._clock(),
        )
        incidents_closed_total.labels(pattern_id=incident.pattern_id, status="succeeded").inc()
        logger.info(
            "Incident succeeded: id=%s pattern=%s cycle=%d",
            incident.incident_id, incident.pattern_id, incident.cycle,
        )
        return incident

    async def _handle_failure(
        self, incident: Incident, step: RemediationStep, attempt: int, unavailable: bool
    ) -> Incident:
        incident_id = incident.incident_id

        if step.on_failure != OnFailure.ABORT and attempt <= step.max_retries:
            delay = 0.0 if unavailable else self.backoff_delay(attempt)
            self._ledger.transition(
                incident_id, IncidentStatus.RETRYING,
                reason=f"step {step.step_id} attempt {attempt} failed, retrying in {delay:g}s",
                at=self._clock(),
            )
            await self._sleep(delay)
            current = self._ledger.get(incident_id)
            if current.status != IncidentStatus.RETRYING:
                return current
            return self._ledger.transition(
                incident_id, IncidentStatus.RUNNING, reason="retry", at=self._clock()
            )

        if step.on_failure == OnFailure.ESCALATE:
            reason = f"step {step.step_id} failed after {attempt} attempt(s)"
            incident = self._ledger.transition(
                incident_id, IncidentStatus.ESCALATED, reason=reason, at=self._clock()
            )
            logger.warning("Incident awaiting manual intervention: id=%s %s", incident_id, reason)
            if self._escalation:
                event = self._escalation.escalate_now(incident_id, reason, self._clock())
                if event:
                    await self._escalation.publish([event])
            return incident

        reason = f"step {step.step_id} failed after {attempt} attempt(s), on_failure={step.on_failure.value}"
        incident = self._ledger.transition(
            incident_id, IncidentStatus.ABORTED, reason=reason, at=self._clock()
        )
        incidents_closed_total.labels(pattern_id=incident.pattern_id, status="aborted").inc()
        logger.error("Incident aborted: id=%s %s", incident_id, reason)
        return incident

    # ── Operator actions ───────────────────────────────────────────

    async def resume_manual(self, incident_id: str, detail: str = "", operator: str = "") -> Incident:
        """Record the current step as resolved by hand and continue the playbook."""
        token = self._ledger.claim(incident_id, self.owner)
        try:
            incident = self._ledger.get(incident_id)
            if incident.status != IncidentStatus.ESCALATED:
                raise InvalidTransition(incident_id, incident.status.value, "manually resolved")

            pattern = self._pattern_for(incident)
            index = incident.current_step_index
            step = pattern.steps[index]
            now = self._clock()
            self._ledger.transition(
                incident_id, IncidentStatus.RUNNING,
                reason=f"step {step.step_id} resolved manually by {operator or 'operator'}",
                at=now,
            )
            incident = self._ledger.record_step(incident_id, StepResult(
                step_id=step.step_id,
                step_index=index,
                cycle=incident.cycle,
                attempt_number=incident.attempts_for(index) + 1,
                outcome=StepOutcome.SUCCESS,
                started_at=now,
                finished_at=now,
                detail=detail or "resolved manually",
                manual=True,
            ))
            logger.info("Step resolved manually: incident=%s step=%s", incident_id, step.step_id)
            incident = self._advance(incident, pattern)
            if incident.status != IncidentStatus.RUNNING:
                return incident
            return await self._drive(incident_id)
        finally:
            self._ledger.release(incident_id, token)

    def abort(self, incident_id: str, reason: str = "", operator: str = "") -> Incident:
        """Operator-forced closure. Works regardless of who holds the claim."""
        incident = self._ledger.get(incident_id)
        if not incident.is_active:
            raise InvalidTransition(incident_id, incident.status.value, IncidentStatus.ABORTED.value)
        incident = self._ledger.transition(
            incident_id, IncidentStatus.ABORTED,
            reason=f"aborted by {operator or 'operator'}" + (f": {reason}" if reason else ""),
            at=self._clock(),
        )
        incidents_closed_total.labels(pattern_id=incident.pattern_id, status="aborted").inc()
        logger.warning("Incident aborted by operator: id=%s reason=%s", incident_id, reason)
        return incident

    # ── Crash recovery ─────────────────────────────────────────────

    async def recover(self) -> list[str]:
        """Re-run every unfinished incident that no executor currently claims.

        Attempt numbering continues from the durable step history, so the last
        unresolved step is simply attempted again.
        """
        active = self._ledger.query(IncidentFilter(statuses={
            IncidentStatus.PENDING,
            IncidentStatus.RUNNING,
            IncidentStatus.RETRYING,
            IncidentStatus.ESCALATED,
        }))
        if self._escalation:
            for incident in active:
                self._escalation.schedule(incident)

        orphaned = [
            i.incident_id for i in active
            if i.status in _RUNNABLE and self._ledger.claim_holder(i.incident_id) is None
        ]
        if not orphaned:
            return []

        logger.warning("Recovering %d unfinished incidents: %s", len(orphaned), orphaned)
        results = await asyncio.gather(*(self.run(i) for i in orphaned), return_exceptions=True)
        recovered = []
        for incident_id, result in zip(orphaned, results):
            if isinstance(result, ClaimConflict):
                logger.info("Recovery skipped, incident already claimed: id=%s", incident_id)
            elif isinstance(result, Exception):
                logger.error("Recovery failed for incident=%s: %r", incident_id, result)
            else:
                recovered.append(incident_id)
        return recovered
