from __future__ import annotations

import logging
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Span, Status, StatusCode

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

TRACER_NAME = "examengine"

# Health checks would otherwise dominate sampled traces.
EXCLUDED_URLS = "health"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def build_tracer_provider(
    *,
    service_name: str,
    environment: str,
    sample_rate: float,
    otlp_endpoint: Optional[str] = None,
    console_exporter: bool = False,
) -> TracerProvider:
    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": TRACER_NAME,
            "deployment.environment": environment,
        }
    )
    # Scoring spans started from a Submit request follow that request's sampling decision.
    provider = TracerProvider(resource=resource, sampler=ParentBased(TraceIdRatioBased(sample_rate)))

    if console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    if otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
    return provider


def init_otel(
    *,
    app: object,
    enabled: bool,
    service_name: str,
    environment: str,
    otlp_endpoint: Optional[str],
    console_exporter: bool,
    sample_rate: float,
) -> None:
    if not enabled:
        return

    trace.set_tracer_provider(
        build_tracer_provider(
            service_name=service_name,
            environment=environment,
            sample_rate=sample_rate,
            otlp_endpoint=otlp_endpoint,
            console_exporter=console_exporter,
        )
    )
    FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)  # type: ignore[arg-type]


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(TRACER_NAME)


def record_span_failure(span: Span, exc: BaseException) -> None:
    """Mark a worker span as failed; the attempt is left for replay."""
    span.record_exception(exc)
    span.set_status(Status(StatusCode.ERROR, str(exc)))
    span.set_attribute("scoring.pending_replay", True)
