"""Prometheus metric definitions for the settlement engine."""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Outbound gateway API calls by outcome",
    ["service", "gateway", "method", "outcome"],
)
gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Outbound gateway API latency seconds",
    ["service", "gateway"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
checkouts_total = Counter("checkouts_total", "Checkouts by resulting status", ["service", "gateway", "status"])
settlements_total = Counter("settlements_total", "Settlement transitions applied", ["service", "status"])
refunds_total = Counter("refunds_total", "Refunds applied by kind", ["service", "kind"])
payment_e2e_seconds = Histogram(
    "payment_e2e_seconds",
    "Payment duration seconds from creation to terminal state",
    ["service", "terminal_state"],
)
webhooks_received_total = Counter(
    "webhooks_received_total",
    "Inbound webhook deliveries by outcome",
    ["service", "provider", "outcome"],
)
webhook_verification_failures_total = Counter(
    "webhook_verification_failures_total",
    "Webhook deliveries rejected by signature/token verification",
    ["service", "provider"],
)
duplicate_webhooks_skipped_total = Counter(
    "duplicate_webhooks_skipped_total",
    "Webhook deliveries skipped because they were already processed",
    ["service", "provider"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
