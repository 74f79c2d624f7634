"""Prometheus metric definitions for the booking pipeline."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


booking_transitions_total = Counter(
    "booking_transitions_total",
    "Applied booking/payment status transitions",
    ["service", "field", "from_state", "to_state"],
)
transition_noops_total = Counter(
    "transition_noops_total",
    "Transitions skipped because the guarded write affected no rows",
    ["service", "field", "reason"],
)
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Notifications accepted by a messaging provider",
    ["service", "provider", "notification_type"],
)
notification_failures_total = Counter(
    "notification_failures_total",
    "Notifications that could not be sent",
    ["service", "provider", "error_type"],
)
inbound_messages_total = Counter(
    "inbound_messages_total",
    "Inbound chat messages by normalized intent",
    ["service", "source", "intent"],
)
payment_initiations_total = Counter(
    "payment_initiations_total",
    "Payment initiation attempts by method and result",
    ["service", "method", "result"],
)
payment_webhooks_total = Counter(
    "payment_webhooks_total",
    "Payment provider webhooks by normalized outcome",
    ["service", "provider", "outcome"],
)
provider_latency_seconds = Histogram(
    "provider_latency_seconds",
    "Outbound provider call latency seconds",
    ["service", "provider", "operation"],
)
sweep_expired_total = Counter("sweep_expired_total", "Bookings expired by the sweeper", ["service"])
sweep_errors_total = Counter("sweep_errors_total", "Per-item sweep failures", ["service"])
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
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbox events skipped",
    ["service", "source"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
