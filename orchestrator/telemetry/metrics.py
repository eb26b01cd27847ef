"""Prometheus metrics definitions."""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

http_request_duration = Histogram(
    "http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    labelnames=["method", "endpoint", "status_code"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    labelnames=["method", "endpoint", "status_code"],
)

signals_ingested_total = Counter(
    "orchestrator_signals_ingested_total",
    "Signals accepted into the correlation window",
    labelnames=["source"],
)

signals_duplicate_total = Counter(
    "orchestrator_signals_duplicate_total",
    "Signals dropped because their id was already ingested",
)

signals_rejected_total = Counter(
    "orchestrator_signals_rejected_total",
    "Signals rejected as malformed",
)

signals_unclassified_total = Counter(
    "orchestrator_signals_unclassified_total",
    "Signals that matched no incident pattern",
)

incidents_opened_total = Counter(
    "orchestrator_incidents_opened_total",
    "Incidents opened",
    labelnames=["pattern_id", "severity"],
)

incidents_reopened_total = Counter(
    "orchestrator_incidents_reopened_total",
    "Resolved incidents reopened within the cool-down",
    labelnames=["pattern_id"],
)

incidents_closed_total = Counter(
    "orchestrator_incidents_closed_total",
    "Incidents reaching a terminal playbook state",
    labelnames=["pattern_id", "status"],
)

step_outcomes_total = Counter(
    "orchestrator_step_outcomes_total",
    "Remediation step attempts by outcome",
    labelnames=["action_ref", "outcome"],
)

step_duration = Histogram(
    "orchestrator_step_duration_seconds",
    "Duration of remediation step attempts in seconds",
    labelnames=["action_ref"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

escalations_total = Counter(
    "orchestrator_escalations_total",
    "Escalation events emitted",
    labelnames=["severity", "to_tier"],
)


def get_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
