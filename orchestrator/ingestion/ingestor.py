"""Signal ingestor — normalize, dedupe and retain signals for correlation."""

from __future__ import annotations

import logging

from orchestrator.ingestion.models import RawSignal, Signal
from orchestrator.ingestion.normalizer import normalize
from orchestrator.ingestion.window import CorrelationWindow
from orchestrator.telemetry.metrics import signals_duplicate_total, signals_ingested_total

logger = logging.getLogger("orchestrator.ingestion")


class SignalIngestor:
    def __init__(self, window: CorrelationWindow) -> None:
        self.window = window

    def accept(self, raw_event: dict | RawSignal) -> tuple[Signal, bool]:
        """Normalize and store a raw event.

        Returns the signal and whether it was newly stored (False for a duplicate id).
        Raises MalformedSignal for events without timestamp or metric identity.
        """
        signal = normalize(raw_event)
        stored = self.window.add(signal)
        if stored:
            signals_ingested_total.labels(source=signal.source).inc()
            logger.info(
                "Signal ingested: id=%s source=%s metric=%s value=%s",
                signal.id, signal.source, signal.metric_name, signal.value,
            )
        else:
            signals_duplicate_total.inc()
        return signal, stored

    def ingest(self, raw_event: dict | RawSignal) -> Signal:
        signal, _ = self.accept(raw_event)
        return signal

    def retract(self, signal: Signal) -> None:
        """Drop a stored signal that could not be handed on, so the sender may resubmit it."""
        self.window.forget(signal)
        logger.warning("Signal retracted, awaiting resubmission: id=%s", signal.id)
