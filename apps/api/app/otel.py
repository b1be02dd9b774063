from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from app.core.config import get_settings


_provider: TracerProvider | None = None


def _get_or_create_provider(service_name: str) -> TracerProvider:
    global _provider

    if _provider is None:
        settings = get_settings()
        resource = Resource.create(
            {
                "service.name": service_name,
                "service.version": settings.app_version,
                "deployment.environment": settings.app_env,
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str) -> TracerProvider | None:
    settings = get_settings()
    if not settings.otel_enabled:
        return None

    provider = _get_or_create_provider(service_name)
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    return provider


def setup_inmemory_otel(service_name: str = "crm-api") -> InMemorySpanExporter:
    provider = _get_or_create_provider(service_name)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_fastapi_server_request_hook():
    """Tag server spans before the app runs.

    ``crm.session_presented`` says whether the caller sent a cookie or bearer
    credential at all; whether it was valid is the guard's business.
    """
    session_cookie = get_settings().session_cookie_name.encode("latin-1")

    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        correlation_raw = headers.get(b"x-correlation-id")
        if correlation_raw:
            span.set_attribute("correlation_id", correlation_raw.decode("latin-1"))
        presented = headers.get(b"authorization", b"").lower().startswith(b"bearer ") or (
            session_cookie + b"=" in headers.get(b"cookie", b"")
        )
        span.set_attribute("crm.session_presented", presented)

    return server_request_hook
