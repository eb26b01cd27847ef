"""Normalize raw monitoring events into canonical Signals."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from orchestrator.errors import MalformedSignal
from orchestrator.ingestion.models import RawSignal, Signal

logger = logging.getLogger("orchestrator.ingestion")

# Anything above this is treated as epoch milliseconds.
_EPOCH_MS_THRESHOLD = 1e12


def parse_timestamp(raw: Any) -> datetime:
    """Parse an ISO-8601 string or epoch number into an aware UTC datetime."""
    if raw is None or raw == "":
        raise MalformedSignal("timestamp is required")

    if isinstance(raw, datetime):
        ts = raw
    elif isinstance(raw, bool):
        raise MalformedSignal(f"invalid timestamp: {raw!r}")
    elif isinstance(raw, (int, float)):
        seconds = raw / 1000.0 if raw > _EPOCH_MS_THRESHOLD else float(raw)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise MalformedSignal(f"invalid timestamp: {raw!r}") from exc
    elif isinstance(raw, str):
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(text)
        except ValueError as exc:
            raise MalformedSignal(f"invalid timestamp: {raw!r}") from exc
    else:
        raise MalformedSignal(f"invalid timestamp: {raw!r}")

    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def normalize(raw_event: dict | RawSignal) -> Signal:
    """Validate a raw event and build the canonical Signal.

    Raises MalformedSignal if the timestamp or metric identity is missing.
    """
    if isinstance(raw_event, RawSignal):
        raw = raw_event
    else:
        try:
            raw = RawSignal.model_validate(raw_event)
        except ValidationError as exc:
            raise MalformedSignal(str(exc)) from exc

    metric_name = (raw.metric_name or "").strip()
    if not metric_name:
        raise MalformedSignal("metric_name is required")

    fields = {
        "source": raw.source or "unknown",
        "timestamp": parse_timestamp(raw.timestamp),
        "metric_name": metric_name,
        "value": raw.value,
        "labels": {str(k): str(v) for k, v in raw.labels.items()},
    }
    if raw.id:
        fields["id"] = raw.id
    return Signal(**fields)
