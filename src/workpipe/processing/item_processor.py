"""
Item processor: consumer of the ordered work queue.

Per delivered message:
1. Parse the item payload and look up the item row. A PROCESSED or FAILED
   item is acknowledged without running the work again.
2. Run the unit of work. Any failure is raised as ``ProcessingFailure``; the
   consumer leaves the message unacknowledged and the queue redelivers it
   after the visibility timeout, until the redrive policy moves it to the DLQ.
3. Conditionally move the item PENDING -> PROCESSED with ``processedAt``.
   If another writer already made the item terminal, acknowledge without
   change.

A malformed payload or a missing item row also raises ``ProcessingFailure``
and so reaches the DLQ through the normal retry budget.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from core.errors.exceptions import (
    ConditionalCheckFailedError,
    PersistenceError,
    ProcessingFailure,
    wrap_exception,
)
from core.logging import log_with_context
from workpipe.common import metrics
from workpipe.common.store.work_store import WorkStore
from workpipe.common.types import Clock, ReceivedMessage, system_clock, to_iso
from workpipe.schemas.orders import ItemMessage, ItemRecord, ItemStatus

logger = logging.getLogger(__name__)

WorkFunction = Callable[[ItemMessage], Awaitable[None]]
TransitionListener = Callable[[ItemRecord], Awaitable[None]]


class ItemProcessor:
    """Runs the unit of work for one item message per invocation."""

    def __init__(
        self,
        store: WorkStore,
        work: WorkFunction,
        clock: Clock = system_clock,
        on_transition: TransitionListener | None = None,
    ):
        self.store = store
        self.work = work
        self._clock = clock
        self._on_transition = on_transition

        self._records_processed = 0
        self._records_skipped = 0
        self._records_failed = 0

    def get_stats(self) -> dict[str, Any]:
        return {
            "records_succeeded": self._records_processed,
            "records_skipped": self._records_skipped,
            "records_failed": self._records_failed,
        }

    async def handle_message(self, message: ReceivedMessage) -> None:
        """Queue consumer entry point. Raises to leave the message queued."""
        try:
            item = self.parse(message)
            log_with_context(
                logger,
                logging.INFO,
                f"Received message for item {item.item_id} in order {item.order_id}",
                order_id=item.order_id,
                item_id=item.item_id,
            )
            await self.process(item)
        except Exception:
            self._records_failed += 1
            raise

    @staticmethod
    def parse(message: ReceivedMessage) -> ItemMessage:
        try:
            return ItemMessage.model_validate_json(message.body)
        except ValidationError as e:
            raise ProcessingFailure(
                f"Malformed item payload in message {message.message_id}",
                cause=e,
                context={"message_id": message.message_id},
            ) from e

    async def process(self, item: ItemMessage) -> bool:
        """Process one item. Returns True if the item moved to PROCESSED.

        Raises:
            ProcessingFailure: Unknown item, or the unit of work failed
            PersistenceError: The store failed
        """
        existing = await self._get_item(item)
        if existing is None:
            raise ProcessingFailure(
                f"Item {item.item_id} not found in work store",
                context={"order_id": item.order_id, "item_id": item.item_id},
            )

        if existing.is_terminal:
            self._records_skipped += 1
            log_with_context(
                logger,
                logging.INFO,
                f"Item {item.item_id} already {existing.item_status.value}, skipping",
                order_id=item.order_id,
                item_id=item.item_id,
                item_status=existing.item_status.value,
            )
            return False

        try:
            await self.work(item)
        except ProcessingFailure:
            raise
        except Exception as e:
            raise ProcessingFailure(
                f"Processing failed for item {item.item_id}",
                cause=e,
                context={"order_id": item.order_id, "item_id": item.item_id},
            ) from e

        try:
            updated = await self.store.update_item_status(
                item.order_id,
                item.item_id,
                ItemStatus.PROCESSED,
                timestamp=to_iso(self._clock()),
                expected_status=ItemStatus.PENDING,
            )
        except ConditionalCheckFailedError as e:
            current = e.current
            self._records_skipped += 1
            log_with_context(
                logger,
                logging.WARNING,
                f"Item {item.item_id} became terminal during processing, leaving it unchanged",
                order_id=item.order_id,
                item_id=item.item_id,
                item_status=current.item_status.value if current else None,
            )
            return False

        self._records_processed += 1
        metrics.record_item_transition(ItemStatus.PROCESSED.value)
        log_with_context(
            logger,
            logging.INFO,
            f"Item {item.item_id} processed successfully",
            order_id=item.order_id,
            item_id=item.item_id,
            item_status=ItemStatus.PROCESSED.value,
        )

        if self._on_transition is not None:
            await self._on_transition(updated)
        return True

    async def _get_item(self, item: ItemMessage) -> ItemRecord | None:
        try:
            return await self.store.get_item(item.order_id, item.item_id)
        except Exception as e:
            error = wrap_exception(
                e,
                default_class=PersistenceError,
                context={"order_id": item.order_id, "item_id": item.item_id},
            )
            if error is e:
                raise
            raise error from e
