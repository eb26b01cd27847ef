"""Data models for signal ingestion and normalization."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class RawSignal(BaseModel):
    """Inbound monitoring event as submitted by a source. Everything is optional here;
    the normalizer decides what is malformed."""

    id: str | None = None
    source: str = "unknown"
    timestamp: Any = None
    metric_name: str | None = Field(default=None, alias="metricName")
    value: float = 0.0
    labels: dict[str, Any] = {}

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Signal(BaseModel):
    """Canonical, immutable signal record."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex[:12])
    source: str
    timestamp: datetime
    metric_name: str
    value: float
    labels: dict[str, str] = {}

    @property
    def window_key(self) -> tuple[str, str]:
        return (self.source, self.metric_name)
