"""
Prometheus metrics for pipeline monitoring.

Focused on essential metrics:
- Queue sends, receives, redeliveries, acknowledgements and dead-lettering
- Queue depth by visibility state
- Handler errors by error category and handler duration
- Ingestion outcomes and idempotency replays
- Item status transitions

All metrics register with the default prometheus_client registry, which is
what ``start_http_server`` exposes.
"""

import logging

from prometheus_client import Counter, Gauge, Histogram

logger = logging.getLogger(__name__)


# =============================================================================
# Queue metrics
# =============================================================================

messages_sent_counter = Counter(
    "workpipe_messages_sent_total",
    "Total messages accepted by a queue",
    labelnames=["queue"],
)

messages_deduplicated_counter = Counter(
    "workpipe_messages_deduplicated_total",
    "Total sends coalesced with an earlier send inside the dedup window",
    labelnames=["queue"],
)

messages_received_counter = Counter(
    "workpipe_messages_received_total",
    "Total message deliveries to consumers",
    labelnames=["queue"],
)

messages_redelivered_counter = Counter(
    "workpipe_messages_redelivered_total",
    "Total deliveries with a receive count above one",
    labelnames=["queue"],
)

messages_acknowledged_counter = Counter(
    "workpipe_messages_acknowledged_total",
    "Total messages deleted by consumers",
    labelnames=["queue"],
)

messages_dead_lettered_counter = Counter(
    "workpipe_messages_dead_lettered_total",
    "Total messages moved to a dead-letter queue after exhausting receives",
    labelnames=["queue", "dead_letter_queue"],
)

messages_expired_counter = Counter(
    "workpipe_messages_expired_total",
    "Total messages dropped after the retention period",
    labelnames=["queue"],
)

queue_depth_gauge = Gauge(
    "workpipe_queue_depth",
    "Messages currently held by a queue",
    labelnames=["queue", "state"],
)

# =============================================================================
# Consumer metrics
# =============================================================================

processing_errors_counter = Counter(
    "workpipe_processing_errors_total",
    "Total handler errors by error category",
    labelnames=["queue", "error_category"],
)

message_processing_duration_seconds = Histogram(
    "workpipe_message_processing_duration_seconds",
    "Time spent handling individual messages",
    labelnames=["queue"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# =============================================================================
# Domain metrics
# =============================================================================

ingestion_requests_counter = Counter(
    "workpipe_ingestion_requests_total",
    "Ingestion requests by outcome",
    labelnames=["outcome"],
)

idempotency_outcomes_counter = Counter(
    "workpipe_idempotency_outcomes_total",
    "Idempotency guard outcomes (executed, replayed, in_progress)",
    labelnames=["outcome"],
)

item_transitions_counter = Counter(
    "workpipe_item_transitions_total",
    "Item status transitions",
    labelnames=["status"],
)


# =============================================================================
# Convenience Functions
# =============================================================================


def record_message_sent(queue: str, duplicate: bool = False) -> None:
    """Record a send; duplicates are counted separately."""
    if duplicate:
        messages_deduplicated_counter.labels(queue=queue).inc()
    else:
        messages_sent_counter.labels(queue=queue).inc()


def record_message_received(queue: str, receive_count: int) -> None:
    messages_received_counter.labels(queue=queue).inc()
    if receive_count > 1:
        messages_redelivered_counter.labels(queue=queue).inc()


def record_message_acknowledged(queue: str) -> None:
    messages_acknowledged_counter.labels(queue=queue).inc()


def record_dead_lettered(queue: str, dead_letter_queue: str) -> None:
    messages_dead_lettered_counter.labels(queue=queue, dead_letter_queue=dead_letter_queue).inc()


def record_message_expired(queue: str, count: int = 1) -> None:
    messages_expired_counter.labels(queue=queue).inc(count)


def update_queue_depth(queue: str, visible: int, in_flight: int) -> None:
    queue_depth_gauge.labels(queue=queue, state="visible").set(visible)
    queue_depth_gauge.labels(queue=queue, state="in_flight").set(in_flight)


def record_processing_error(queue: str, error_category: str) -> None:
    """Record a handler error."""
    processing_errors_counter.labels(queue=queue, error_category=error_category).inc()


def record_ingestion(outcome: str) -> None:
    ingestion_requests_counter.labels(outcome=outcome).inc()


def record_idempotency_outcome(outcome: str) -> None:
    idempotency_outcomes_counter.labels(outcome=outcome).inc()


def record_item_transition(status: str) -> None:
    item_transitions_counter.labels(status=status).inc()


__all__ = [
    # Metrics
    "messages_sent_counter",
    "messages_deduplicated_counter",
    "messages_received_counter",
    "messages_redelivered_counter",
    "messages_acknowledged_counter",
    "messages_dead_lettered_counter",
    "messages_expired_counter",
    "queue_depth_gauge",
    "processing_errors_counter",
    "message_processing_duration_seconds",
    "ingestion_requests_counter",
    "idempotency_outcomes_counter",
    "item_transitions_counter",
    # Helper functions
    "record_message_sent",
    "record_message_received",
    "record_message_acknowledged",
    "record_dead_lettered",
    "record_message_expired",
    "update_queue_depth",
    "record_processing_error",
    "record_ingestion",
    "record_idempotency_outcome",
    "record_item_transition",
]
