"""Prometheus metric definitions for the billing service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
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
notifications_received_total = Counter(
    "notifications_received_total",
    "Inbound gateway notifications by topic and handling outcome",
    ["service", "topic", "outcome"],
)
duplicate_notifications_skipped_total = Counter(
    "duplicate_notifications_skipped_total",
    "Notifications skipped because an identical one was already processed",
    ["service", "topic"],
)
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Outbound payment gateway calls",
    ["operation", "outcome"],
)
gateway_latency_seconds = Histogram(
    "gateway_latency_seconds",
    "Payment gateway call latency seconds",
    ["operation"],
)
charges_paid_total = Counter("charges_paid_total", "Charges transitioned to Paid", ["service", "source"])
charges_overdue_total = Counter("charges_overdue_total", "Charges lazily transitioned to Overdue", ["service"])
payment_attempts_total = Counter(
    "payment_attempts_total",
    "Payment attempts created",
    ["service", "origin"],
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

    return Response(content=generate_latest(), media_type="text/plain")
