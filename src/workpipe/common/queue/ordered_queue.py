"""
In-process partitioned FIFO queue with visibility timeouts and redrive.

Delivery contract:
- Messages sharing a partition key are delivered in send order, and at most
  one message per partition is in flight at a time. A partition whose head
  message is in flight is blocked until that message is deleted or its
  visibility window lapses.
- Delivery is at-least-once. A received message stays invisible for the
  visibility timeout; if it is not deleted by then it becomes visible again
  and the next receive redelivers it with a higher receive count.
- With a redrive policy, a visible message that has already been received
  ``max_receive_count`` times is moved to the dead-letter queue at its next
  delivery attempt instead of being delivered again. Consumers therefore see
  at most ``max_receive_count`` deliveries.
- Sends with the same (partition key, deduplication id) inside the
  deduplication window are coalesced.
- Messages older than the retention period are dropped.

An unordered queue (``ordered=False``) delivers any visible message and is
used for dead-letter queues.

Usage:
    >>> dlq = OrderedWorkQueue("orders-dlq.fifo", ordered=False)
    >>> queue = OrderedWorkQueue(
    ...     "orders.fifo",
    ...     visibility_timeout=30,
    ...     redrive_policy=RedrivePolicy(dead_letter_queue=dlq, max_receive_count=3),
    ... )
    >>> await queue.send(body, partition_key="order-001", deduplication_id="a-1")
    >>> [message] = await queue.receive(max_messages=1)
    >>> await queue.delete(message.receipt_handle)
"""

import asyncio
import hashlib
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from core.errors.exceptions import TerminalFailure
from core.logging import log_exception
from workpipe.common import metrics
from workpipe.common.types import Clock, ReceivedMessage, SendResult, system_clock

logger = logging.getLogger(__name__)

DEFAULT_VISIBILITY_TIMEOUT_SECONDS = 30.0
DEFAULT_DEDUPLICATION_WINDOW_SECONDS = 300.0
DEFAULT_RETENTION_SECONDS = 4 * 24 * 3600

# Long-poll re-check interval; visibility expiry does not signal waiters
LONG_POLL_INTERVAL_SECONDS = 0.05


@dataclass
class RedrivePolicy:
    """Where to move messages that exhausted their receives."""

    dead_letter_queue: "OrderedWorkQueue"
    max_receive_count: int = 3

    def __post_init__(self) -> None:
        if self.max_receive_count < 1:
            raise ValueError("max_receive_count must be >= 1")


@dataclass
class _StoredMessage:
    message_id: str
    body: str
    partition_key: str | None
    deduplication_id: str | None
    sequence_number: int
    sent_timestamp: float
    receive_count: int = 0
    visible_at: float = 0.0
    receipt_handle: str | None = None


class OrderedWorkQueue:
    """Partitioned FIFO queue with at-least-once delivery.

    All state changes happen synchronously between awaits, so a single
    event loop needs no lock.
    """

    def __init__(
        self,
        name: str,
        *,
        ordered: bool = True,
        visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT_SECONDS,
        deduplication_window: float = DEFAULT_DEDUPLICATION_WINDOW_SECONDS,
        retention_period: float = DEFAULT_RETENTION_SECONDS,
        redrive_policy: RedrivePolicy | None = None,
        clock: Clock = system_clock,
    ):
        if visibility_timeout <= 0:
            raise ValueError("visibility_timeout must be > 0")

        self.name = name
        self.ordered = ordered
        self.visibility_timeout = visibility_timeout
        self.deduplication_window = deduplication_window
        self.retention_period = retention_period
        self.redrive_policy = redrive_policy
        self._clock = clock

        # Send order is iteration order
        self._messages: OrderedDict[str, _StoredMessage] = OrderedDict()
        self._receipts: dict[str, str] = {}  # receipt handle -> message id
        self._dedup: dict[tuple[str | None, str], tuple[float, str, int]] = {}
        self._sequence = 0
        self._activity = asyncio.Event()

        logger.debug(
            f"Created queue {name}",
            extra={
                "queue_name": name,
                "ordered": ordered,
                "visibility_timeout": visibility_timeout,
                "max_receive_count": (
                    redrive_policy.max_receive_count if redrive_policy else None
                ),
            },
        )

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send(
        self,
        body: str,
        partition_key: str | None = None,
        deduplication_id: str | None = None,
    ) -> SendResult:
        """Add a message to the tail of its partition.

        Ordered queues require a partition key. Without a deduplication id
        the SHA-256 of the body is used (content-based deduplication).

        Raises:
            ValueError: Ordered queue and no partition key
        """
        if self.ordered and not partition_key:
            raise ValueError(f"Queue {self.name} is ordered; partition_key is required")

        now = self._clock()
        self._expire_dedup_entries(now)

        dedup_id = deduplication_id or hashlib.sha256(body.encode("utf-8")).hexdigest()
        dedup_key = (partition_key, dedup_id)
        existing = self._dedup.get(dedup_key)
        if existing is not None:
            _, message_id, sequence_number = existing
            metrics.record_message_sent(self.name, duplicate=True)
            logger.debug(
                "Send coalesced with earlier message inside dedup window",
                extra={
                    "queue_name": self.name,
                    "partition_key": partition_key,
                    "deduplication_id": dedup_id,
                    "message_id": message_id,
                },
            )
            return SendResult(message_id=message_id, sequence_number=sequence_number, duplicate=True)

        stored = self._append(
            body=body,
            partition_key=partition_key,
            deduplication_id=dedup_id,
            sent_timestamp=now,
        )
        self._dedup[dedup_key] = (now, stored.message_id, stored.sequence_number)
        metrics.record_message_sent(self.name)

        logger.debug(
            "Message sent",
            extra={
                "queue_name": self.name,
                "partition_key": partition_key,
                "message_id": stored.message_id,
                "sequence_number": stored.sequence_number,
            },
        )
        return SendResult(message_id=stored.message_id, sequence_number=stored.sequence_number)

    def _append(
        self,
        body: str,
        partition_key: str | None,
        deduplication_id: str | None,
        sent_timestamp: float,
        message_id: str | None = None,
    ) -> _StoredMessage:
        self._sequence += 1
        stored = _StoredMessage(
            message_id=message_id or str(uuid.uuid4()),
            body=body,
            partition_key=partition_key,
            deduplication_id=deduplication_id,
            sequence_number=self._sequence,
            sent_timestamp=sent_timestamp,
        )
        self._messages[stored.message_id] = stored
        self._notify()
        return stored

    def _accept_redriven(self, message: _StoredMessage) -> None:
        """Take a message moved from a source queue.

        Body, ids and original send time are kept; the receive count starts
        over and dedup does not apply.
        """
        self._append(
            body=message.body,
            partition_key=message.partition_key,
            deduplication_id=message.deduplication_id,
            sent_timestamp=message.sent_timestamp,
            message_id=message.message_id,
        )

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------

    async def receive(
        self,
        max_messages: int = 1,
        wait_seconds: float = 0.0,
    ) -> list[ReceivedMessage]:
        """Receive up to ``max_messages`` visible messages.

        Waits up to ``wait_seconds`` (long polling) when nothing is
        deliverable. Returns an empty list on timeout.
        """
        if max_messages < 1:
            raise ValueError("max_messages must be >= 1")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_seconds

        while True:
            messages = self._collect(max_messages)
            remaining = deadline - loop.time()
            if messages or remaining <= 0:
                return messages

            self._activity.clear()
            try:
                await asyncio.wait_for(
                    self._activity.wait(),
                    timeout=min(remaining, LONG_POLL_INTERVAL_SECONDS),
                )
            except TimeoutError:
                pass

    def _collect(self, max_messages: int) -> list[ReceivedMessage]:
        now = self._clock()
        self._expire_retained(now)

        delivered: list[ReceivedMessage] = []
        blocked: set[str | None] = set()

        for stored in list(self._messages.values()):
            if len(delivered) >= max_messages:
                break

            if self.ordered and stored.partition_key in blocked:
                continue

            if stored.visible_at > now:
                # In flight: the rest of this partition waits behind it
                if self.ordered:
                    blocked.add(stored.partition_key)
                continue

            if (
                self.redrive_policy is not None
                and stored.receive_count >= self.redrive_policy.max_receive_count
            ):
                self._redrive(stored)
                continue

            delivered.append(self._deliver(stored, now))
            if self.ordered:
                blocked.add(stored.partition_key)

        if delivered:
            self._update_depth_metrics(now)
        return delivered

    def _deliver(self, stored: _StoredMessage, now: float) -> ReceivedMessage:
        if stored.receipt_handle is not None:
            self._receipts.pop(stored.receipt_handle, None)

        stored.receive_count += 1
        stored.visible_at = now + self.visibility_timeout
        stored.receipt_handle = f"{stored.message_id}:{uuid.uuid4().hex}"
        self._receipts[stored.receipt_handle] = stored.message_id

        metrics.record_message_received(self.name, stored.receive_count)
        if stored.receive_count > 1:
            logger.info(
                "Redelivering message after visibility timeout",
                extra={
                    "queue_name": self.name,
                    "partition_key": stored.partition_key,
                    "message_id": stored.message_id,
                    "receive_count": stored.receive_count,
                },
            )

        return ReceivedMessage(
            queue_name=self.name,
            message_id=stored.message_id,
            body=stored.body,
            partition_key=stored.partition_key,
            deduplication_id=stored.deduplication_id,
            sequence_number=stored.sequence_number,
            receipt_handle=stored.receipt_handle,
            receive_count=stored.receive_count,
            sent_timestamp=stored.sent_timestamp,
        )

    def _redrive(self, stored: _StoredMessage) -> None:
        policy = self.redrive_policy
        self._remove(stored)
        policy.dead_letter_queue._accept_redriven(stored)
        metrics.record_dead_lettered(self.name, policy.dead_letter_queue.name)

        failure = TerminalFailure(
            f"Message {stored.message_id} exhausted {stored.receive_count} receives",
            receive_count=stored.receive_count,
            context={"dead_letter_queue": policy.dead_letter_queue.name},
        )
        log_exception(
            logger,
            failure,
            "Moved message to dead-letter queue",
            level=logging.WARNING,
            include_traceback=False,
            queue_name=self.name,
            partition_key=stored.partition_key,
            message_id=stored.message_id,
            receive_count=stored.receive_count,
            dead_letter_queue=policy.dead_letter_queue.name,
        )

    # ------------------------------------------------------------------
    # Acknowledge
    # ------------------------------------------------------------------

    async def delete(self, receipt_handle: str) -> bool:
        """Acknowledge a delivery.

        Only the most recent receipt handle of a message is valid. Returns
        False (and leaves the message alone) for a stale or unknown handle.
        """
        message_id = self._receipts.get(receipt_handle)
        stored = self._messages.get(message_id) if message_id else None
        if stored is None or stored.receipt_handle != receipt_handle:
            logger.warning(
                "Ignoring delete with stale or unknown receipt handle",
                extra={"queue_name": self.name, "receipt_handle": receipt_handle},
            )
            return False

        self._remove(stored)
        metrics.record_message_acknowledged(self.name)
        self._update_depth_metrics(self._clock())
        return True

    async def change_visibility(self, receipt_handle: str, visibility_timeout: float) -> bool:
        """Keep a delivery invisible for ``visibility_timeout`` more seconds.

        Only the most recent receipt handle is accepted. Returns False for a
        stale or unknown handle.
        """
        message_id = self._receipts.get(receipt_handle)
        stored = self._messages.get(message_id) if message_id else None
        if stored is None or stored.receipt_handle != receipt_handle:
            return False

        stored.visible_at = self._clock() + visibility_timeout
        return True

    def _remove(self, stored: _StoredMessage) -> None:
        self._messages.pop(stored.message_id, None)
        if stored.receipt_handle is not None:
            self._receipts.pop(stored.receipt_handle, None)
        # Removing a head message may unblock its partition
        self._notify()

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def _expire_dedup_entries(self, now: float) -> None:
        cutoff = now - self.deduplication_window
        expired = [key for key, (sent_at, _, _) in self._dedup.items() if sent_at <= cutoff]
        for key in expired:
            del self._dedup[key]

    def _expire_retained(self, now: float) -> None:
        cutoff = now - self.retention_period
        expired = [m for m in self._messages.values() if m.sent_timestamp <= cutoff]
        for stored in expired:
            self._remove(stored)
            logger.warning(
                "Dropping message past retention period",
                extra={
                    "queue_name": self.name,
                    "partition_key": stored.partition_key,
                    "message_id": stored.message_id,
                    "receive_count": stored.receive_count,
                },
            )
        if expired:
            metrics.record_message_expired(self.name, len(expired))

    def _notify(self) -> None:
        self._activity.set()

    def _update_depth_metrics(self, now: float) -> None:
        in_flight = sum(1 for m in self._messages.values() if m.visible_at > now)
        metrics.update_queue_depth(self.name, len(self._messages) - in_flight, in_flight)

    async def purge(self) -> int:
        """Drop every message. Returns how many were dropped."""
        count = len(self._messages)
        self._messages.clear()
        self._receipts.clear()
        self._update_depth_metrics(self._clock())
        logger.info(f"Purged {count} messages", extra={"queue_name": self.name})
        return count

    def __len__(self) -> int:
        return len(self._messages)

    def is_empty(self) -> bool:
        return not self._messages

    def attributes(self) -> dict[str, Any]:
        """Queue attributes, named after their managed-queue equivalents."""
        now = self._clock()
        in_flight = sum(1 for m in self._messages.values() if m.visible_at > now)
        attrs: dict[str, Any] = {
            "ApproximateNumberOfMessages": len(self._messages) - in_flight,
            "ApproximateNumberOfMessagesNotVisible": in_flight,
            "VisibilityTimeout": self.visibility_timeout,
            "MessageRetentionPeriod": self.retention_period,
            "FifoQueue": self.ordered,
        }
        if self.redrive_policy is not None:
            attrs["RedrivePolicy"] = {
                "deadLetterTargetArn": self.redrive_policy.dead_letter_queue.name,
                "maxReceiveCount": self.redrive_policy.max_receive_count,
            }
        return attrs

    def peek(self) -> list[ReceivedMessage]:
        """Snapshot of stored messages without changing visibility (operator use)."""
        return [
            ReceivedMessage(
                queue_name=self.name,
                message_id=m.message_id,
                body=m.body,
                partition_key=m.partition_key,
                deduplication_id=m.deduplication_id,
                sequence_number=m.sequence_number,
                receipt_handle="",
                receive_count=m.receive_count,
                sent_timestamp=m.sent_timestamp,
            )
            for m in self._messages.values()
        ]
