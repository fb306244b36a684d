"""OpenTelemetry tracer provider for the CRM API.

The provider is process-wide. ``setup_otel`` attaches the exporters named in ``Settings``
once. Tests attach an in-memory exporter to the same provider instead.
"""

from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from crm_api.context import CORRELATION_HEADER, accepted_correlation_id
from crm_api.core.config import Settings, get_settings


_exporters_attached = False
_provider: TracerProvider | None = None


def _tracer_provider(settings: Settings) -> TracerProvider:
    global _provider

    if _provider is None:
        resource = Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": settings.app_version,
                "deployment.environment": settings.app_env,
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(settings: Settings) -> TracerProvider | None:
    global _exporters_attached

    if not settings.otel_enabled:
        return None

    provider = _tracer_provider(settings)
    if _exporters_attached:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_attached = True
    return provider


def setup_inmemory_otel(settings: Settings | None = None) -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider(settings or get_settings()).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def tag_server_span(span: trace.Span | None, scope: dict[str, Any]) -> None:
    """FastAPI server-request hook: copy an acceptable inbound correlation id onto the span."""
    if span is None or not span.is_recording():
        return
    headers = dict(scope.get("headers", []))
    raw = headers.get(CORRELATION_HEADER.encode("latin-1"))
    correlation_id = accepted_correlation_id(raw.decode("latin-1")) if raw else None
    if correlation_id:
        span.set_attribute("correlation_id", correlation_id)
