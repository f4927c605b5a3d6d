"""
Distributed Tracing with OpenTelemetry.

Spans cover the service-level mint and each transfer attempt. SQL issued by
the PostgreSQL store is traced through the SQLAlchemy instrumentation.
Without setup_tracing() the API's no-op tracer is used.
"""

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode
from sqlalchemy.ext.asyncio import AsyncEngine

from faucet.config import settings

ATTRIBUTE_PREFIX = "faucet."


def setup_tracing() -> None:
    """Install an OTLP-exporting TracerProvider when tracing is enabled."""
    if not settings.tracing_enabled:
        return

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": settings.service_version,
            "faucet.storage_backend": settings.storage_backend,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_sqlalchemy(engine: AsyncEngine) -> None:
    """Trace queries on the PostgreSQL store's engine."""
    if not settings.tracing_enabled:
        return

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def span_attributes(**attributes: Any) -> dict[str, str | int | float | bool]:
    """Prefix keys, drop None values and stringify UUIDs and enums."""
    converted: dict[str, str | int | float | bool] = {}
    for key, value in attributes.items():
        if value is None:
            continue
        if not isinstance(value, (str, int, float, bool)):
            value = str(value)
        converted[f"{ATTRIBUTE_PREFIX}{key}"] = value
    return converted


class trace_operation:
    """
    Current span around a faucet operation; exceptions mark it as an error.

    Usage:
        with trace_operation("mint", user_id=user.id, amount=amount):
            ...
    """

    def __init__(self, operation_name: str, **attributes: Any) -> None:
        self.operation_name = operation_name
        self.attributes = span_attributes(**attributes)
        self._manager: Any = None

    def __enter__(self) -> Span:
        tracer = trace.get_tracer("faucet.operations")
        self._manager = tracer.start_as_current_span(
            self.operation_name,
            attributes=self.attributes,
            record_exception=False,
            set_status_on_exception=False,
        )
        span: Span = self._manager.__enter__()
        return span

    def __exit__(self, exc_type: Any, exc_val: BaseException | None, exc_tb: Any) -> None:
        if exc_val is not None:
            span = trace.get_current_span()
            span.set_status(Status(StatusCode.ERROR, str(exc_val)))
            span.record_exception(exc_val)
        self._manager.__exit__(exc_type, exc_val, exc_tb)
