"""Data models for operational metrics snapshots."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, Field, model_validator


class Period(BaseModel):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _ordered(self) -> "Period":
        if self.end < self.start:
            raise ValueError("period end precedes start")
        return self

    @classmethod
    def last(cls, hours: float, now: datetime | None = None) -> "Period":
        end = now or datetime.now(timezone.utc)
        return cls(start=end - timedelta(hours=hours), end=end)

    def contains(self, ts: datetime | None) -> bool:
        return ts is not None and self.start <= ts < self.end


class MetricsSnapshot(BaseModel):
    """Rolling operational metrics derived from the ledger."""

    period_start: datetime
    period_end: datetime
    incident_count: int = 0
    resolved_count: int = 0
    mttr_seconds: float | None = None
    mtbf_by_type: dict[str, float | None] = {}
    runbook_effectiveness_pct: float | None = None
    false_positive_pct: float | None = None
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
