"""Tests for logging and tracing setup."""

import io
import json
from unittest.mock import MagicMock, patch

import pytest
import structlog

from jupyter_kernel_session import observability
from jupyter_kernel_session.config import ClientSettings
from jupyter_kernel_session.observability import configure_logging


@pytest.fixture(autouse=True)
def restore_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def fresh_tracing(monkeypatch):
    monkeypatch.setattr(observability, "_tracing_endpoint", None)


def test_log_level_from_settings_filters(monkeypatch):
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    stream = io.StringIO()
    settings = ClientSettings(_env_file=None, LOG_LEVEL="warning")

    logger = configure_logging(settings, stream=stream)
    logger.info("[KERNEL] hidden")
    logger.warning("[KERNEL] shown", cell_id="c1")

    lines = [json.loads(line) for line in stream.getvalue().splitlines()]
    assert len(lines) == 1
    assert lines[0]["event"] == "[KERNEL] shown"
    assert lines[0]["level"] == "warning"
    assert lines[0]["cell_id"] == "c1"
    assert "timestamp" in lines[0]


def test_otlp_endpoint_enables_tracing_once(monkeypatch, fresh_tracing):
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://collector:4317")
    settings = ClientSettings(_env_file=None)

    with patch.object(observability, "OTLPSpanExporter", MagicMock()) as exporter, patch.object(
        observability.trace, "set_tracer_provider"
    ) as set_provider:
        configure_logging(settings, stream=io.StringIO())
        configure_logging(settings, stream=io.StringIO())

    exporter.assert_called_once_with(endpoint="http://collector:4317")
    set_provider.assert_called_once()


def test_trace_ids_added_inside_span():
    span = MagicMock()
    span.get_span_context.return_value = MagicMock(trace_id=1, span_id=2)

    with patch.object(observability.trace, "get_current_span", return_value=span):
        event = observability.add_otel_trace_info(None, "info", {"event": "x"})

    assert event["trace_id"] == "0x" + "0" * 31 + "1"
    assert event["span_id"] == "0x" + "0" * 15 + "2"


def test_no_trace_ids_outside_span():
    assert observability.add_otel_trace_info(None, "info", {"event": "x"}) == {"event": "x"}
