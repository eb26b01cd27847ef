"""Tests for structured logging."""

import json
import logging
import sys

from orchestrator.telemetry.logging import JsonFormatter, setup_logging


class TestJsonFormatter:
    def test_one_json_object_with_trace_defaults(self):
        record = logging.LogRecord("orchestrator.ledger", logging.WARNING, __file__, 1,
                                   "Ledger replayed: %d events", (3,), None)
        entry = json.loads(JsonFormatter().format(record))
        assert entry["message"] == "Ledger replayed: 3 events"
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "orchestrator.ledger"
        assert entry["trace_id"] == "0"
        assert entry["service"] == "incident-orchestrator"

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("orchestrator", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        entry = json.loads(JsonFormatter().format(record))
        assert "RuntimeError: boom" in entry["exc_info"]


class TestSetupLogging:
    def test_configures_orchestrator_logger(self):
        logger = setup_logging()
        assert logger.name == "orchestrator"
        assert logger.propagate is False
        assert isinstance(logger.handlers[0].formatter, JsonFormatter)
