"""Incident Remediation Orchestrator — FastAPI service entry point."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from orchestrator.api import handlers, incidents, metrics
from orchestrator.api.middleware import MetricsMiddleware
from orchestrator.config import Settings, settings
from orchestrator.escalation.notifier import LoggingNotifier, WebhookNotifier
from orchestrator.escalation.scheduler import EscalationScheduler
from orchestrator.ingestion import receiver
from orchestrator.ingestion.ingestor import SignalIngestor
from orchestrator.ingestion.window import CorrelationWindow
from orchestrator.ledger.store import IncidentLedger
from orchestrator.matching.loader import load_config
from orchestrator.matching.matcher import PatternMatcher
from orchestrator.playbook.actions import ActionRegistry, HttpActionExecutor
from orchestrator.playbook.engine import PlaybookEngine
from orchestrator.queue.producer import enqueue_signal
from orchestrator.queue.redis_client import close_redis, get_redis, stream_stats
from orchestrator.queue.worker import SignalWorker
from orchestrator.reporting.aggregator import MetricsAggregator
from orchestrator.service import Orchestrator
from orchestrator.telemetry.logging import setup_logging

logger = setup_logging(otlp_endpoint=settings.otlp_endpoint)

if settings.otlp_endpoint:
    from orchestrator.telemetry.tracing import setup_tracing

    setup_tracing(settings.otlp_endpoint)

# ── Singletons initialised at startup ─────────────────────────────

_closers: list = []
_worker: SignalWorker | None = None


def build_orchestrator(cfg: Settings, actions: ActionRegistry | None = None) -> Orchestrator:
    """Assemble the orchestrator from configuration."""
    registry, policy = load_config(cfg.patterns_file)
    ledger = IncidentLedger(cfg.ledger_path)

    if actions is None:
        fallback = None
        if cfg.action_executor_url:
            fallback = HttpActionExecutor(cfg.action_executor_url, cfg.action_executor_timeout_seconds)
            _closers.append(fallback)
        actions = ActionRegistry(fallback=fallback)

    if cfg.escalation_webhook_url:
        notifier = WebhookNotifier(cfg.escalation_webhook_url)
        _closers.append(notifier)
    else:
        notifier = LoggingNotifier()

    escalation = EscalationScheduler(ledger, policy, registry, notifier)
    engine = PlaybookEngine(ledger, registry, actions, escalation)
    window = CorrelationWindow(cfg.correlation_window_seconds, cfg.correlation_window_max_signals)

    return Orchestrator(
        SignalIngestor(window),
        PatternMatcher(registry),
        engine,
        ledger,
        escalation,
        MetricsAggregator(ledger),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _worker

    logger.info("Initializing orchestrator...")
    orchestrator = build_orchestrator(settings)
    app.state.orchestrator = orchestrator

    if settings.redis_url:
        r = await get_redis()
        await r.ping()
        logger.info("Redis connected: %s", settings.redis_url)
        app.state.dispatch = enqueue_signal
        _worker = SignalWorker(orchestrator.handle_signal)
        await _worker.start()
    else:
        logger.warning("No Redis configured — matching signals in-process")
        app.state.dispatch = orchestrator.handle_signal

    await orchestrator.start()
    logger.info("Orchestrator ready — listening on %s:%d", settings.host, settings.port)

    yield

    if _worker:
        await _worker.stop()
    await orchestrator.stop()
    for closer in _closers:
        await closer.close()
    await close_redis()
    logger.info("Orchestrator shut down")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Incident Remediation Orchestrator",
        description="Signal matching, playbook execution, escalation and incident ledger",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(MetricsMiddleware)
    handlers.install_error_handlers(app)

    app.include_router(receiver.router)
    app.include_router(incidents.router)
    app.include_router(metrics.router)

    @app.get("/health")
    async def health():
        orchestrator = getattr(app.state, "orchestrator", None)
        return {
            "status": "healthy",
            "ledger_incidents": len(orchestrator.ledger) if orchestrator else 0,
            "patterns_loaded": orchestrator is not None,
            "worker_running": _worker is not None and _worker.running,
            "escalations_pending": orchestrator.escalation.pending() if orchestrator else 0,
        }

    @app.get("/queue/stats")
    async def queue_stats():
        """Show current stream depth and consumer group info."""
        if not settings.redis_url:
            return {"mode": "in-process", "max_concurrent": settings.max_concurrent_signals}

        stats = await stream_stats(await get_redis())
        return {"mode": "redis", **stats, "max_concurrent": settings.max_concurrent_signals}

    return app


app = create_app()

if settings.otlp_endpoint:
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

    FastAPIInstrumentor.instrument_app(app)


def run() -> None:
    import uvicorn

    uvicorn.run("orchestrator.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
