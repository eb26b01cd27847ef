"""Severity-based escalation tiers and response-time thresholds."""

from __future__ import annotations

from datetime import timedelta

from pydantic import BaseModel, ConfigDict, model_validator

from orchestrator.matching.patterns import Severity

DEFAULT_TIERS = ("On-call", "Team Lead", "Engineering Manager", "VP")

_MIN = 60
_HOUR = 3600

# thresholds[i] is the elapsed time after which tier i hands over to tier i + 1
DEFAULT_THRESHOLDS = {
    Severity.P0: (15 * _MIN, 30 * _MIN, 1 * _HOUR),
    Severity.P1: (30 * _MIN, 1 * _HOUR, 2 * _HOUR),
    Severity.P2: (2 * _HOUR, 4 * _HOUR, 8 * _HOUR),
    Severity.P3: (8 * _HOUR, 24 * _HOUR, 48 * _HOUR),
}


class EscalationPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    tiers: tuple[str, ...] = DEFAULT_TIERS
    thresholds: dict[Severity, tuple[timedelta, ...]] = {
        sev: tuple(timedelta(seconds=s) for s in secs) for sev, secs in DEFAULT_THRESHOLDS.items()
    }

    @model_validator(mode="after")
    def _check(self) -> "EscalationPolicy":
        if len(self.tiers) < 2:
            raise ValueError("at least two escalation tiers are required")
        for sev, values in self.thresholds.items():
            if list(values) != sorted(values):
                raise ValueError(f"thresholds for {sev.value} must be ascending")
        return self

    def tier_name(self, level: int) -> str:
        return self.tiers[min(level, len(self.tiers) - 1)]

    @property
    def max_level(self) -> int:
        return len(self.tiers) - 1

    def threshold(
        self, severity: Severity, level: int, first_override: timedelta | None = None
    ) -> timedelta | None:
        """Elapsed time after which ``level`` escalates, or None at the top tier."""
        if level >= self.max_level:
            return None
        values = list(self.thresholds.get(severity, ()))
        if first_override is not None:
            if values:
                values[0] = first_override
            else:
                values = [first_override]
        if level >= len(values):
            return None
        return values[level]
