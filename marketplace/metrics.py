"""
Prometheus metrics: webhook intake (API), reconciliation outcomes (worker),
state transitions (services), queue depth (SQS).
"""
from prometheus_client import Counter, Gauge, generate_latest

# API: webhook events accepted for reconciliation (by gateway event type)
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total payment gateway events verified and queued for reconciliation",
    ["event_type"],
)
webhook_events_duplicate_total = Counter(
    "webhook_events_duplicate_total",
    "Total payment gateway events acknowledged as redeliveries of a seen event id",
)
webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Total webhook requests rejected by signature verification",
)

# Worker: reconciliation outcomes
events_processed_total = Counter(
    "events_processed_total",
    "Total gateway events reconciled successfully",
    ["event_type"],
)
events_ignored_total = Counter(
    "events_ignored_total",
    "Total gateway events dropped (unhandled type or not tied to an order or plan)",
    ["event_type"],
)
events_failed_total = Counter(
    "events_failed_total",
    "Total gateway events that failed reconciliation (retried or sent to DLQ)",
)
events_dlq_total = Counter(
    "events_dlq_total",
    "Total gateway events moved to DLQ after max retries",
)

# Services: state changes
order_transitions_total = Counter(
    "order_transitions_total",
    "Total order status / payment status writes",
    ["axis", "value"],
)
plan_transitions_total = Counter(
    "plan_transitions_total",
    "Total provider plan lifecycle writes",
    ["operation", "status"],
)

rate_limited_requests_total = Counter(
    "rate_limited_requests_total",
    "Total requests rejected by the rate limiter",
)

# SQS queue depth (when using SQS) - backpressure / consumer lag
sqs_queue_messages_waiting = Gauge(
    "sqs_queue_messages_waiting",
    "Approximate number of messages waiting in SQS (main queue)",
)
sqs_queue_messages_in_flight = Gauge(
    "sqs_queue_messages_in_flight",
    "Approximate number of messages in flight (received but not yet deleted)",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
