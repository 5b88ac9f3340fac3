"""Tracing for the CRM admin API.

A single tracer provider is installed per process. Exporters are attached to
it on demand: console output when ``OTEL_CONSOLE_EXPORTER`` is set, and an
in-memory exporter for tests.
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from crm_admin.core.config import get_settings


SERVICE_NAME = "crm-admin-api"
MUTATION_SPAN = "crm.mutation"

_CORRELATION_HEADERS = (b"x-correlation-id", b"x-request-id")


class _TracingState:
    def __init__(self) -> None:
        self.provider: TracerProvider | None = None
        self.console_attached = False

    def ensure_provider(self, service_name: str) -> TracerProvider:
        if self.provider is None:
            settings = get_settings()
            self.provider = TracerProvider(
                resource=Resource.create(
                    {
                        "service.name": service_name,
                        "service.version": settings.app_version,
                        "deployment.environment": settings.app_env,
                    }
                )
            )
            trace.set_tracer_provider(self.provider)
        return self.provider


_state = _TracingState()


def setup_otel(service_name: str = SERVICE_NAME, enable: bool = True) -> TracerProvider | None:
    if not enable:
        return None

    provider = _state.ensure_provider(service_name)
    if not _state.console_attached and os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        _state.console_attached = True
    return provider


def setup_inmemory_otel(service_name: str = SERVICE_NAME) -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _state.ensure_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


@contextmanager
def mutation_span(
    tracer: trace.Tracer,
    resource: str,
    action: str,
    resource_id: int | None = None,
) -> Iterator[trace.Span]:
    """Open a ``crm.mutation`` span tagged with the resource and action.

    The id can be attached later with ``span.set_attribute("crm.resource_id", ...)``
    when it is only known after the insert.
    """
    with tracer.start_as_current_span(MUTATION_SPAN) as span:
        span.set_attribute("crm.resource", resource)
        span.set_attribute("crm.action", action)
        if resource_id is not None:
            span.set_attribute("crm.resource_id", resource_id)
        yield span


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        for name in _CORRELATION_HEADERS:
            raw = headers.get(name)
            if raw:
                span.set_attribute("correlation_id", raw.decode("latin-1"))
                return

    return server_request_hook
