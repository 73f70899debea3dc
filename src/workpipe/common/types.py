"""Queue envelope types and the clock used by time-dependent components.

Handlers never see queue internals. They receive a ``ReceivedMessage``: the
body as sent, plus delivery metadata owned by the queue (receive count,
receipt handle). Acknowledgement is by receipt handle, so a stale delivery
whose visibility window lapsed cannot delete a newer one.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

__all__ = [
    "Clock",
    "system_clock",
    "to_iso",
    "ReceivedMessage",
    "SendResult",
]

# Returns epoch seconds. Tests swap in a manual clock.
Clock = Callable[[], float]

system_clock: Clock = time.time


def to_iso(epoch_seconds: float) -> str:
    """Format epoch seconds as an ISO-8601 UTC timestamp."""
    return datetime.fromtimestamp(epoch_seconds, UTC).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ReceivedMessage:
    """One delivery of a queued message.

    Attributes:
        queue_name: Queue the message was received from
        message_id: Queue-assigned id, stable across redeliveries
        body: Message body exactly as sent
        partition_key: Ordering key (None on unordered queues)
        deduplication_id: Sender-supplied dedup identity
        sequence_number: Monotonic per-queue send sequence
        receipt_handle: Token for this delivery only; used to acknowledge
        receive_count: Deliveries so far, including this one
        sent_timestamp: Epoch seconds when first sent
    """

    queue_name: str
    message_id: str
    body: str
    partition_key: str | None
    deduplication_id: str | None
    sequence_number: int
    receipt_handle: str
    receive_count: int
    sent_timestamp: float


@dataclass(frozen=True)
class SendResult:
    """Confirmation of a send.

    ``duplicate`` is True when the send was coalesced with an earlier one
    inside the deduplication window; ``message_id`` then refers to the
    original message.
    """

    message_id: str
    sequence_number: int
    duplicate: bool = False
