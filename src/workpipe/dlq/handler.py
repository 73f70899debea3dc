"""
Dead-letter handler for items that exhausted their retry budget.

For each dead-lettered item message:
- conditionally mark the item FAILED with ``failedAt`` (only from PENDING;
  an item already PROCESSED is left untouched)
- log the full payload for manual review
- fire the best-effort notifier

This is the terminal tier: nothing here raises, so every message is
acknowledged. Store and notifier failures are logged and counted as
processing errors only.
"""

import logging
from typing import Any, Protocol

from pydantic import ValidationError

from core.errors.exceptions import ConditionalCheckFailedError
from core.logging import log_exception
from workpipe.common import metrics
from workpipe.common.store.work_store import WorkStore
from workpipe.common.types import Clock, ReceivedMessage, system_clock, to_iso
from workpipe.processing.item_processor import TransitionListener
from workpipe.schemas.orders import ItemMessage, ItemStatus

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Operator notification for failed items."""

    async def notify_failed_item(self, item: ItemMessage, reason: str) -> None: ...


class LoggingNotifier:
    """Notifier that writes an ERROR log line."""

    async def notify_failed_item(self, item: ItemMessage, reason: str) -> None:
        logger.error(
            f"Item {item.item_id} on order {item.order_id} needs manual review: {reason}",
            extra={
                "order_id": item.order_id,
                "item_id": item.item_id,
                "user_id": item.user_id,
            },
        )


class DeadLetterHandler:
    """
    Marks dead-lettered items FAILED for manual review.

    Usage:
        >>> handler = DeadLetterHandler(store, notifier=LoggingNotifier())
        >>> consumer = QueueConsumer(dlq, handler.handle_message, name="dlq-handler", batch_size=10)
    """

    def __init__(
        self,
        store: WorkStore,
        notifier: Notifier | None = None,
        clock: Clock = system_clock,
        on_transition: TransitionListener | None = None,
    ):
        self.store = store
        self.notifier = notifier or LoggingNotifier()
        self._clock = clock
        self._on_transition = on_transition

        self._records_failed_marked = 0
        self._records_skipped = 0
        self._processing_errors = 0

    def get_stats(self) -> dict[str, Any]:
        return {
            "records_succeeded": self._records_failed_marked,
            "records_skipped": self._records_skipped,
            "records_failed": self._processing_errors,
        }

    async def handle_message(self, message: ReceivedMessage) -> None:
        """Queue consumer entry point. Never raises."""
        try:
            item = ItemMessage.model_validate_json(message.body)
        except ValidationError as e:
            self._processing_errors += 1
            log_exception(
                logger,
                e,
                "Failed to parse DLQ message; payload kept in log for review",
                include_traceback=False,
                message_id=message.message_id,
                payload=message.body,
            )
            return

        logger.info(
            f"Processing failed item {item.item_id} on order {item.order_id} from DLQ",
            extra={"order_id": item.order_id, "item_id": item.item_id},
        )

        reason = await self._mark_failed(item)

        logger.error(
            f"Item {item.item_id} on order {item.order_id} failed after maximum retries",
            extra={
                "order_id": item.order_id,
                "item_id": item.item_id,
                "payload": item.model_dump(by_alias=True, mode="json"),
            },
        )

        try:
            await self.notifier.notify_failed_item(item, reason)
        except Exception as e:
            self._processing_errors += 1
            log_exception(
                logger,
                e,
                "Failed to send failed-item notification",
                order_id=item.order_id,
                item_id=item.item_id,
            )

    async def _mark_failed(self, item: ItemMessage) -> str:
        """Move the item to FAILED. Returns a reason string for the notifier."""
        try:
            updated = await self.store.update_item_status(
                item.order_id,
                item.item_id,
                ItemStatus.FAILED,
                timestamp=to_iso(self._clock()),
                expected_status=ItemStatus.PENDING,
            )
        except ConditionalCheckFailedError as e:
            return self._handle_not_pending(item, e)
        except Exception as e:
            self._processing_errors += 1
            log_exception(
                logger,
                e,
                f"Failed to update item status to FAILED for {item.item_id}",
                order_id=item.order_id,
                item_id=item.item_id,
            )
            return "retry budget exhausted; marking FAILED did not succeed"

        self._records_failed_marked += 1
        metrics.record_item_transition(ItemStatus.FAILED.value)
        logger.info(
            f"Item {item.item_id} on order {item.order_id} marked as FAILED and logged for manual review",
            extra={
                "order_id": item.order_id,
                "item_id": item.item_id,
                "item_status": ItemStatus.FAILED.value,
            },
        )

        if self._on_transition is not None:
            await self._on_transition(updated)
        return "retry budget exhausted"

    def _handle_not_pending(self, item: ItemMessage, error: ConditionalCheckFailedError) -> str:
        current = error.current
        self._records_skipped += 1

        if current is None:
            self._processing_errors += 1
            logger.error(
                f"Dead-lettered item {item.item_id} not found in work store",
                extra={"order_id": item.order_id, "item_id": item.item_id},
            )
            return "retry budget exhausted; item not found in work store"

        logger.warning(
            f"Item {item.item_id} already {current.item_status.value}; leaving it unchanged",
            extra={
                "order_id": item.order_id,
                "item_id": item.item_id,
                "item_status": current.item_status.value,
            },
        )
        return f"retry budget exhausted; item already {current.item_status.value}"
