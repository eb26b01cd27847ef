"""Load pattern definitions and severity SLA tables from YAML configuration."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from orchestrator.errors import PatternConfigError
from orchestrator.escalation.policy import EscalationPolicy
from orchestrator.matching.matcher import PatternRegistry
from orchestrator.matching.patterns import IncidentPattern

logger = logging.getLogger("orchestrator.matching")


def parse_config(data: dict) -> tuple[PatternRegistry, EscalationPolicy]:
    """Build the pattern registry and escalation policy from a parsed config mapping."""
    if not isinstance(data, dict):
        raise PatternConfigError("configuration root must be a mapping")

    try:
        policy = EscalationPolicy.model_validate(data.get("escalation") or {})
    except ValidationError as exc:
        raise PatternConfigError(f"invalid escalation policy: {exc}") from exc

    registry = PatternRegistry()
    for i, raw in enumerate(data.get("patterns") or []):
        try:
            pattern = IncidentPattern.model_validate(raw)
        except ValidationError as exc:
            raise PatternConfigError(f"invalid pattern #{i}: {exc}") from exc
        registry.register(pattern)

    return registry, policy


def load_config(path: str | Path) -> tuple[PatternRegistry, EscalationPolicy]:
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise PatternConfigError(f"cannot read {path}: {exc}") from exc

    registry, policy = parse_config(data)
    logger.info("Loaded %d incident patterns from %s (version=%s)",
                len(registry), path, data.get("version", "unversioned"))
    return registry, policy
