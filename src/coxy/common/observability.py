"""Logging and tracing setup for the image proxy."""

from __future__ import annotations

import logging
from typing import Dict, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ALWAYS_OFF, TraceIdRatioBased
from structlog.contextvars import bind_contextvars, unbind_contextvars

from .settings import ProxySettings

REQUEST_CONTEXT_KEYS = ("request_id", "path", "client")

_logging_configured = False
_tracer_configured = False
_httpx_instrumented = False


def configure_logging(service_name: str, level: str | int | None = None) -> None:
    """Route structlog through stdlib logging as one JSON object per line."""

    global _logging_configured
    numeric_level = level if isinstance(level, int) else logging.getLevelName(str(level or "INFO").strip().upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    if _logging_configured:
        logging.getLogger().setLevel(numeric_level)
    else:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _logging_configured = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    """Parse ``key=value,key=value`` exporter headers, skipping malformed items."""
    result: Dict[str, str] = {}
    for item in (headers or "").split(","):
        key, _, value = item.partition("=")
        if key.strip() and value.strip():
            result[key.strip()] = value.strip()
    return result


def build_tracer_provider(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 0.1,
) -> TracerProvider:
    """Spans are only recorded when there is a collector to ship them to."""

    resource = Resource.create({"service.name": service_name})
    if not endpoint:
        return TracerProvider(resource=resource, sampler=ALWAYS_OFF)

    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(max(0.0, min(1.0, sampler_ratio))))
    exporter = OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers))
    provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 0.1,
) -> None:
    """Install the global tracer provider once and instrument outbound httpx calls."""

    global _tracer_configured, _httpx_instrumented
    if _tracer_configured:
        return
    if not isinstance(trace.get_tracer_provider(), TracerProvider):
        trace.set_tracer_provider(build_tracer_provider(service_name, endpoint, headers, sampler_ratio))
    _tracer_configured = True

    if not _httpx_instrumented:
        HTTPXClientInstrumentor().instrument()
        _httpx_instrumented = True


def configure_observability(service_name: str, settings: ProxySettings) -> None:
    configure_logging(service_name, settings.log_level)
    configure_tracing(
        service_name,
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )


def instrument_fastapi_app(app, tracer_provider: Optional[TracerProvider] = None) -> None:
    FastAPIInstrumentor.instrument_app(app, tracer_provider=tracer_provider or trace.get_tracer_provider())


def bind_request_context(*, request_id: str, path: str, client: str | None) -> None:
    """Attach per-request fields to every log line emitted while handling it."""

    bind_contextvars(request_id=request_id, path=path, client=client)


def clear_request_context() -> None:
    unbind_contextvars(*REQUEST_CONTEXT_KEYS)
