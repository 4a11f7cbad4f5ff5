from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
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
from opentelemetry.trace import Span

from app.context import get_correlation_id
from app.core.config import Settings, get_settings


CORRELATION_HEADERS = (b"x-correlation-id", b"x-request-id")

_provider: TracerProvider | None = None
_exporters_attached = False


def _provider_for(settings: Settings, component: str) -> TracerProvider:
    global _provider

    if _provider is not None:
        return _provider

    resource = Resource.create(
        {
            "service.name": f"{settings.app_name.lower().replace(' ', '-')}.{component}",
            "service.version": settings.app_version,
            "deployment.environment": settings.app_env,
        }
    )
    _provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(_provider)
    return _provider


def configure_tracing(component: str, settings: Settings | None = None) -> TracerProvider | None:
    """Install the process tracer provider for ``component`` ("api" or "worker").

    Exporters are attached once per process: OTLP over HTTP when
    ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set, console output when
    ``OTEL_CONSOLE_EXPORTER`` is true. Returns ``None`` when tracing is off.
    """
    global _exporters_attached

    settings = settings or get_settings()
    if not settings.otel_enabled:
        return None

    provider = _provider_for(settings, component)
    if _exporters_attached:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
        )
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_attached = True
    return provider


def setup_inmemory_otel(component: str = "api") -> InMemorySpanExporter:
    provider = _provider_for(get_settings(), component)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


_workflow_tracer = get_tracer("app.workflows")


@contextmanager
def workflow_span(entity_type: str, action: str, entity_id: uuid.UUID | None = None) -> Iterator[Span]:
    """Span around a single workflow action such as ``visit.complete`` or ``offer.counter``."""
    with _workflow_tracer.start_as_current_span(f"{entity_type}.{action}") as span:
        span.set_attribute("workflow.entity_type", entity_type)
        span.set_attribute("workflow.action", action)
        if entity_id is not None:
            span.set_attribute("workflow.entity_id", str(entity_id))
        correlation_id = get_correlation_id()
        if correlation_id:
            span.set_attribute("correlation_id", correlation_id)
        yield span


def get_fastapi_server_request_hook():
    def server_request_hook(span: Span | None, scope: dict[str, Any]) -> None:
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        for name in CORRELATION_HEADERS:
            raw = headers.get(name)
            if raw:
                span.set_attribute("correlation_id", raw.decode("utf-8"))
                return

    return server_request_hook
