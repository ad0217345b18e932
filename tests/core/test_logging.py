"""Tests for meetbell.core.logging: bound context, redaction and renderers."""

from __future__ import annotations

import json
import logging

import pytest
import structlog

from meetbell.core.logging import (
    _NOISE_LOGGERS,
    add_otel_context,
    configure_logging,
    log_context,
    redact_credential_values,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    structlog.contextvars.clear_contextvars()
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET)


def _json_records(capsys) -> list[dict]:
    return [json.loads(line) for line in capsys.readouterr().err.splitlines() if line.strip()]


# ============================================================================
# Rendered records
# ============================================================================


class TestJsonRecords:
    def test_instance_and_trigger_context(self, capsys):
        configure_logging(fmt="json", instance_name="desk")
        log = logging.getLogger("meetbell.orchestrator")

        with log_context(trigger="meeting_standup_1741597800000"):
            log.info("Reminder fired for %s", "Standup")
        log.info("Idle")

        fired, idle = _json_records(capsys)
        assert fired["event"] == "Reminder fired for Standup"
        assert fired["instance"] == "desk"
        assert fired["trigger"] == "meeting_standup_1741597800000"
        assert fired["level"] == "info"
        assert "trigger" not in idle

    def test_credentials_redacted_from_messages(self, capsys):
        configure_logging(fmt="json")
        logging.getLogger("meetbell.tokens").warning(
            "Refresh failed: refresh_token=abc123 Authorization: Bearer ya29.secret"
        )

        (record,) = _json_records(capsys)
        assert "abc123" not in record["event"]
        assert "ya29.secret" not in record["event"]
        assert "refresh_token=[REDACTED]" in record["event"]

    def test_level_filters_records(self, capsys):
        configure_logging(level="warning", fmt="json")
        logging.getLogger("meetbell.scheduler").info("hidden")
        assert _json_records(capsys) == []


# ============================================================================
# configure_logging()
# ============================================================================


class TestConfigureLogging:
    def test_text_format_installs_console_renderer(self):
        configure_logging(fmt="text")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_reconfiguration_does_not_duplicate_handlers(self):
        configure_logging()
        configure_logging(fmt="json")
        assert len(logging.getLogger().handlers) == 1

    def test_noise_loggers_suppressed(self):
        configure_logging()
        assert logging.getLogger("httpx").level == logging.WARNING


class TestProcessors:
    def test_no_trace_ids_outside_a_span(self):
        assert "trace_id" not in add_otel_context(None, "info", {"event": "x"})

    def test_trace_ids_inside_a_span(self):
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider()
        with provider.get_tracer("test").start_as_current_span("meetbell.sync"):
            result = add_otel_context(None, "info", {"event": "x"})
        provider.shutdown()
        assert len(result["trace_id"]) == 32
        assert len(result["span_id"]) == 16

    def test_redaction_of_quoted_values(self):
        redacted = redact_credential_values('{"client_secret": "s3cr3t", "token": "t0k"}')
        assert "s3cr3t" not in redacted
        assert "t0k" not in redacted
