"""Orchestrator configuration — storage paths, queue endpoints and tuning knobs."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_prefix": "ORCH_"}

    # Static configuration supplied by the compliance collaborator
    patterns_file: str = "config/patterns.yaml"

    # Correlation window
    correlation_window_seconds: int = 600
    correlation_window_max_signals: int = 1000

    # Playbook execution
    reopen_cooldown_seconds: int = 3600
    retry_backoff_base_seconds: float = 1.0
    retry_backoff_cap_seconds: float = 60.0
    action_executor_url: str = ""
    action_executor_timeout_seconds: float = 30.0

    # Escalation
    escalation_tick_seconds: int = 30
    escalation_webhook_url: str = ""

    # Ledger
    ledger_path: str = "/opt/orchestrator/data/ledger.jsonl"

    # Redis
    redis_url: str = "redis://redis:6379/0"
    redis_max_connections: int = 10
    signal_stream: str = "orch:signals"
    consumer_group: str = "orch-matchers"
    consumer_name: str = "matcher-1"
    pending_redelivery_seconds: int = 60
    backlog_batch_size: int = 100
    max_concurrent_signals: int = 8
    signal_processing_timeout_seconds: int = 900

    # Telemetry
    otlp_endpoint: str = ""

    # Server
    host: str = "0.0.0.0"
    port: int = 8200


settings = Settings()
