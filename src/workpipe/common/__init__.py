"""Shared pipeline infrastructure: queue, store, idempotency, health, metrics."""

from workpipe.common.health import HealthCheckServer
from workpipe.common.idempotency import IdempotencyGuard, compute_fingerprint
from workpipe.common.queue import OrderedWorkQueue, QueueConsumer, RedrivePolicy
from workpipe.common.store import InMemoryWorkStore, JsonFileWorkStore, WorkStore
from workpipe.common.types import Clock, ReceivedMessage, SendResult, system_clock, to_iso

__all__ = [
    "Clock",
    "system_clock",
    "to_iso",
    "ReceivedMessage",
    "SendResult",
    "OrderedWorkQueue",
    "RedrivePolicy",
    "QueueConsumer",
    "WorkStore",
    "InMemoryWorkStore",
    "JsonFileWorkStore",
    "IdempotencyGuard",
    "compute_fingerprint",
    "HealthCheckServer",
]
