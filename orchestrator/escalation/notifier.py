"""Escalation notifiers — hand EscalationEvents to whoever pages people."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from orchestrator.playbook.models import EscalationEvent

logger = logging.getLogger("orchestrator.escalation")


class EscalationNotifier(Protocol):
    async def notify(self, event: EscalationEvent) -> None: ...


class LoggingNotifier:
    """Default notifier: the event is only written to the log."""

    async def notify(self, event: EscalationEvent) -> None:
        logger.warning(
            "ESCALATION incident=%s %s -> %s: %s",
            event.incident_id, event.from_tier, event.to_tier, event.reason,
        )


class WebhookNotifier:
    """POSTs each event as JSON to a paging/chat bridge."""

    def __init__(self, url: str, timeout: float = 10.0) -> None:
        self._url = url
        self._http = httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._http.aclose()

    async def notify(self, event: EscalationEvent) -> None:
        resp = await self._http.post(self._url, json=event.model_dump(mode="json"))
        resp.raise_for_status()
        logger.info("Escalation delivered: incident=%s to=%s status=%d",
                    event.incident_id, event.to_tier, resp.status_code)
