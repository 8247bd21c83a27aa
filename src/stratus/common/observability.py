"""Logging and tracing setup shared by the library and the command line."""

from __future__ import annotations

import logging
import sys
from typing import Dict, Optional, TextIO
from urllib.parse import unquote

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from structlog.contextvars import bind_contextvars
from structlog.typing import Processor

from .settings import AuthorizerSettings

_logging_configured = False
_tracer_configured = False


def _log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        numeric = logging.getLevelName(level.strip().upper())
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def _renderers(json_output: bool) -> list[Processor]:
    if json_output:
        return [structlog.processors.EventRenamer("message"), structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=False)]


def configure_logging(
    service_name: str,
    level: str | int | None = None,
    *,
    json_output: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """Route structlog through stdlib logging.

    Log lines go to ``stream`` (stderr by default) so that command output on
    stdout stays machine readable.
    """

    global _logging_configured
    numeric_level = _log_level(level)
    if not _logging_configured:
        logging.basicConfig(level=numeric_level, format="%(message)s", stream=stream or sys.stderr)
        _logging_configured = True
    else:
        logging.getLogger().setLevel(numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks,
            *_renderers(json_output),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    """Parse ``OTEL_EXPORTER_OTLP_HEADERS`` style ``key=value`` pairs; values may be URL-encoded."""
    result: Dict[str, str] = {}
    for item in (headers or "").split(","):
        key, _, value = item.partition("=")
        key, value = key.strip(), unquote(value.strip())
        if key and value:
            result[key] = value
    return result


def _span_processor(endpoint: Optional[str], headers: Optional[str]) -> SpanProcessor:
    if endpoint:
        return BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers)))
    # Without a collector spans are still recorded so that sampling and
    # context propagation behave the same.
    return SimpleSpanProcessor(InMemorySpanExporter())


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
) -> None:
    """Install the process-wide tracer provider and instrument outgoing httpx calls."""

    global _tracer_configured
    if _tracer_configured or isinstance(trace.get_tracer_provider(), TracerProvider):
        _tracer_configured = True
        return

    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name}),
        sampler=TraceIdRatioBased(max(0.0, min(1.0, sampler_ratio))),
    )
    provider.add_span_processor(_span_processor(endpoint, headers))
    trace.set_tracer_provider(provider)
    HTTPXClientInstrumentor().instrument()
    _tracer_configured = True


def configure_from_settings(service_name: str, settings: AuthorizerSettings, *, json_output: bool = True) -> None:
    configure_logging(service_name, settings.log_level, json_output=json_output)
    configure_tracing(
        service_name,
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
