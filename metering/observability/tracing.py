"""
Distributed Tracing with OpenTelemetry.

Spans are exported over OTLP when `TRACING_ENABLED` is set. Otherwise the
global no-op provider stays in place and every helper here costs nothing.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

from metering.config import settings

TRACER_NAME = "metering"
ATTRIBUTE_PREFIX = "metering."


def setup_tracing() -> None:
    """Install a TracerProvider exporting to the configured OTLP collector."""
    if not settings.tracing_enabled:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.service_name,
                "service.version": settings.api_version,
                "deployment.environment": settings.deployment_environment,
            }
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """Trace every request; call once after the app is created."""
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace every statement on an async engine."""
    if settings.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def set_span_attributes(span: Span, **attributes: Any) -> None:
    """Set `metering.*` attributes; None is skipped, non-primitives are stringified."""
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, Enum):
            value = value.value
        if not isinstance(value, (str, int, float, bool)):
            value = str(value)
        span.set_attribute(f"{ATTRIBUTE_PREFIX}{key}", value)


@contextmanager
def trace_operation(operation_name: str, **attributes: Any) -> Iterator[Span]:
    """
    Run a block inside a span named `metering.<operation_name>`.

    Usage:
        with trace_operation("billing_event_process", event_id=event.event_id) as span:
            ...
            set_span_attributes(span, outcome="processed")

    An exception escaping the block marks the span as failed and propagates.
    """
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(
        f"{ATTRIBUTE_PREFIX}{operation_name}",
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        set_span_attributes(span, **attributes)
        try:
            yield span
        except BaseException as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            span.record_exception(exc)
            raise
