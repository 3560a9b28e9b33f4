"""Prometheus metric definitions for the ledger, session lifecycle and API."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


ledger_entries_total = Counter(
    "ledger_entries_total",
    "Ledger entries appended",
    ["service", "entry_type"],
)
insufficient_credits_total = Counter(
    "insufficient_credits_total",
    "Operations rejected because available balance was too low",
    ["service"],
)
transferred_credits_total = Counter(
    "transferred_credits_total",
    "Credits moved from learners to teachers on completion",
    ["service", "origin"],
)
session_transitions_total = Counter(
    "session_transitions_total",
    "Session lifecycle calls by event and outcome",
    ["service", "event", "outcome"],
)
session_transition_errors_total = Counter(
    "session_transition_errors_total",
    "Rejected session lifecycle calls",
    ["service", "event", "error_code"],
)
idempotent_replays_total = Counter(
    "idempotent_replays_total",
    "Mutating calls answered from a prior identical effect",
    ["service", "operation"],
)
sweeper_cancelled_total = Counter(
    "sweeper_cancelled_total",
    "Reservations released by the expiry sweeper",
    ["service", "kind"],
)
sweeper_run_seconds = Histogram(
    "sweeper_run_seconds",
    "Expiry sweeper pass duration seconds",
    ["service"],
)
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
outbox_publish_failures_total = Counter(
    "outbox_publish_failures_total",
    "Outbox rows requeued after a failed Kafka publish",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
