"""OpenTelemetry tracing for Tracker Studio services."""

import os
from contextlib import contextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Status, StatusCode

_configured = False


def _otlp_exporter_kwargs(endpoint: str) -> Dict[str, Any]:
    exporter_kwargs: Dict[str, Any] = {"endpoint": endpoint}

    headers_env = os.getenv("OTEL_EXPORTER_OTLP_HEADERS")
    if headers_env:
        headers = {}
        for segment in headers_env.split(","):
            if "=" not in segment:
                continue
            key, value = segment.split("=", 1)
            if key.strip():
                headers[key.strip()] = value.strip()
        exporter_kwargs["headers"] = headers

    if endpoint.startswith("http://"):
        exporter_kwargs["insecure"] = True
    return exporter_kwargs


def configure_tracing(service_name: str, otlp_endpoint: Optional[str] = None,
                      enable_console: bool = False, env: str = "local"):
    """Install the process-wide tracer provider. Only the first call takes effect."""
    global _configured
    if _configured:
        return

    resource = Resource.create({
        "service.name": service_name,
        "service.version": "1.0.0",
        "service.namespace": "tracker-studio",
        "service.instance.id": os.getenv("HOSTNAME", "unknown"),
        "deployment.environment": env
    })
    provider = TracerProvider(resource=resource)

    if otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**_otlp_exporter_kwargs(otlp_endpoint))))
    if enable_console:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _configured = True


def instrument_app(app: FastAPI):
    FastAPIInstrumentor.instrument_app(app)


def get_tracer(name: str):
    """Get a tracer instance."""
    return trace.get_tracer(name)


@contextmanager
def trace_operation(operation_name: str, **attributes):
    """Run the enclosed block in a span. Attributes with ``None`` values are skipped."""
    tracer = get_tracer("tracker-studio")
    with tracer.start_as_current_span(operation_name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            span.set_attribute("error.type", type(exc).__name__)
            raise


def add_span_attributes(**attributes):
    """Add attributes to the current span."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        for key, value in attributes.items():
            if value is not None:
                current_span.set_attribute(key, value)
