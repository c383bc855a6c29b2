"""
Logging and tracing setup.

Library modules only call structlog.get_logger(__name__) and get_tracer();
applications that embed the client call configure_logging() once at startup.
"""

import logging
import os
import sys
from typing import Optional, TextIO

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from .config import ClientSettings, get_settings

SERVICE_NAME = "jupyter-kernel-session"

_tracing_endpoint: Optional[str] = None


def add_otel_trace_info(logger, method_name, event_dict):
    """structlog processor: stamp the active span's trace and span ids."""
    span = trace.get_current_span()
    if span != trace.INVALID_SPAN:
        context = span.get_span_context()
        event_dict["trace_id"] = f"0x{context.trace_id:032x}"
        event_dict["span_id"] = f"0x{context.span_id:016x}"
    return event_dict


def enable_tracing(endpoint: str) -> bool:
    """
    Export the kernel.initialize / kernel.execute spans over OTLP gRPC.

    The global tracer provider can only be set once per process, so repeat
    calls are ignored.

    Returns:
        True if this call installed the provider
    """
    global _tracing_endpoint
    if _tracing_endpoint is not None:
        return False
    provider = TracerProvider(resource=Resource(attributes={"service.name": SERVICE_NAME}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _tracing_endpoint = endpoint
    return True


def configure_logging(settings: Optional[ClientSettings] = None, stream: Optional[TextIO] = None):
    """
    Configure structlog for the kernel session client.

    Args:
        settings: Source of LOG_LEVEL; read from the environment when omitted
        stream: Where log lines go (default: stderr). A TTY gets the console
            renderer, anything else JSON lines.

    Returns:
        A bound logger using the new configuration
    """
    settings = settings or get_settings()
    stream = stream or sys.stderr
    level = logging.getLevelName(settings.LOG_LEVEL.upper())

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint and enable_tracing(endpoint):
        print(f"[OTEL] Tracing enabled. Exporting to {endpoint}", file=stream)

    processors = [
        structlog.contextvars.merge_contextvars,
        add_otel_trace_info,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    isatty = getattr(stream, "isatty", None)
    if isatty is not None and isatty():
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )

    # requests / websockets log through the stdlib
    logging.basicConfig(format="%(message)s", stream=stream, level=level)

    return structlog.get_logger(SERVICE_NAME)


def get_tracer(name=None):
    """Returns an OpenTelemetry tracer instance."""
    return trace.get_tracer(name if name else __name__)
