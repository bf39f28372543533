"""OpenTelemetry wiring: OTLP export, FastAPI spans and gateway call spans."""

from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from paysettle.common.config import CommonSettings, settings


tracer = trace.get_tracer("paysettle")


def setup_tracing(source: CommonSettings | None = None) -> bool:
    """Register the OTLP exporter; returns False when tracing is switched off."""

    source = source or settings
    if not source.tracing_enabled:
        return False
    resource = Resource.create({"service.name": source.service_name, "deployment.environment": source.environment})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=source.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)
    return True


def instrument_app(app: FastAPI, source: CommonSettings | None = None) -> None:
    source = source or settings
    if source.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


@contextmanager
def gateway_span(gateway: str, method: str, path: str, payment_uuid: str | None = None):
    """Client span around one outbound gateway request."""

    with tracer.start_as_current_span(f"{gateway} {method} {path}", kind=trace.SpanKind.CLIENT) as span:
        span.set_attribute("payment.gateway", gateway)
        span.set_attribute("http.request.method", method)
        span.set_attribute("url.path", path)
        if payment_uuid:
            span.set_attribute("payment.uuid", payment_uuid)
        yield span
