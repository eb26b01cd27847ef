"""Structured JSON logging, optionally exported over OTLP with trace context."""

import json
import logging
import sys

from orchestrator.telemetry.tracing import SERVICE_NAME, build_resource

_OTEL_DEFAULTS = {
    "otelTraceID": "0",
    "otelSpanID": "0",
    "otelServiceName": SERVICE_NAME,
}


class JsonFormatter(logging.Formatter):
    """One JSON object per line; OTEL fields get safe defaults for non-instrumented records."""

    def format(self, record: logging.LogRecord) -> str:
        for key, default in _OTEL_DEFAULTS.items():
            if not hasattr(record, key):
                setattr(record, key, default)

        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "trace_id": record.otelTraceID,
            "span_id": record.otelSpanID,
            "service": record.otelServiceName,
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(otlp_endpoint: str = "", level: int = logging.INFO) -> logging.Logger:
    """Configure the ``orchestrator`` logger tree and uvicorn's loggers.

    With an OTLP endpoint, records are also shipped through an OpenTelemetry
    LoggerProvider.
    """
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(JsonFormatter())

    logger = logging.getLogger("orchestrator")
    logger.setLevel(level)
    logger.handlers = [stream_handler]
    logger.propagate = False

    if otlp_endpoint:
        from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor

        log_provider = LoggerProvider(resource=build_resource())
        log_provider.add_log_record_processor(
            BatchLogRecordProcessor(OTLPLogExporter(endpoint=otlp_endpoint, insecure=True))
        )
        logger.addHandler(LoggingHandler(level=level, logger_provider=log_provider))

    uvicorn_handler = logging.StreamHandler(sys.stdout)
    uvicorn_handler.setFormatter(JsonFormatter())
    logging.getLogger("uvicorn.access").handlers = [uvicorn_handler]
    logging.getLogger("uvicorn.error").handlers = [uvicorn_handler]

    return logger
