"""
Order ingestion service.

Accepts an order, writes the order and its items (PENDING) in one
transactional store write, then sends one work queue message per item with
the order id as partition key. The whole call runs inside the idempotency
guard, keyed by a fingerprint of the request, so a resubmitted order is
answered from the stored result instead of being written and enqueued again.

Failures are not retried here:
- store write failure raises ``PersistenceError`` and nothing is enqueued
- queue send failure raises ``EnqueueError``; items already written stay
  PENDING and items already sent stay queued (no rollback)
Both clear the guard's in-flight marker, so the caller may retry the call.
Rows are only ever inserted: on a retry, or a resubmit after the idempotency
TTL, items that already exist keep their status and only the ones still
PENDING are sent.
"""

import logging
import uuid
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from core.errors.exceptions import (
    EnqueueError,
    InProgressError,
    PersistenceError,
    PipelineError,
    wrap_exception,
)
from core.logging import log_exception
from workpipe.common import metrics
from workpipe.common.idempotency import IdempotencyGuard, compute_fingerprint
from workpipe.common.queue.ordered_queue import OrderedWorkQueue
from workpipe.common.store.work_store import WorkStore
from workpipe.common.types import Clock, system_clock, to_iso
from workpipe.schemas.orders import (
    IngestionResult,
    ItemMessage,
    ItemRecord,
    ItemStatus,
    OrderRecord,
    OrderRequest,
    make_item_id,
)

logger = logging.getLogger(__name__)


def build_records(request: OrderRequest, timestamp: str) -> tuple[OrderRecord, list[ItemRecord]]:
    """Derive the order row and its PENDING item rows from a request."""
    items = [
        ItemRecord(
            order_id=request.order_id,
            item_id=make_item_id(request.order_id, index),
            item_detail=line.item_detail,
            quantity=line.quantity,
            price=line.price,
            item_status=ItemStatus.PENDING,
            timestamp=timestamp,
        )
        for index, line in enumerate(request.order_items)
    ]
    order = OrderRecord(
        order_id=request.order_id,
        user_id=request.user_id,
        order_status=request.order_status,
        timestamp=timestamp,
        total_items=len(items),
        total_value=round(sum(line.price * line.quantity for line in request.order_items), 2),
    )
    return order, items


def _response(status_code: int, message: str, **fields: Any) -> dict[str, Any]:
    body = {"message": message}
    body.update({k: v for k, v in fields.items() if v is not None})
    return {"statusCode": status_code, "body": body}


class OrderIngestionService:
    """Idempotent order intake feeding the ordered work queue."""

    def __init__(
        self,
        store: WorkStore,
        queue: OrderedWorkQueue,
        guard: IdempotencyGuard,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.queue = queue
        self.guard = guard
        self._clock = clock

    async def handle(self, event: Mapping[str, Any] | str | bytes) -> dict[str, Any]:
        """Request/response entry point.

        Returns ``{"statusCode": ..., "body": {"message", "error"?, "orderId"?}}``:
        200 accepted (or replayed), 400 invalid request, 409 same request in
        flight, 500 store or queue failure.
        """
        try:
            if isinstance(event, (str, bytes)):
                request = OrderRequest.model_validate_json(event)
            else:
                request = OrderRequest.model_validate(event)
        except ValidationError as e:
            metrics.record_ingestion("invalid")
            logger.warning(
                "Rejected invalid order request",
                extra={"error": str(e), "error_type": "ValidationError"},
            )
            return _response(400, "Invalid order request", error=str(e))

        try:
            result = await self.ingest(request)
        except InProgressError as e:
            metrics.record_ingestion("in_progress")
            return _response(
                409,
                "Order is already being processed, retry later",
                error=str(e),
                orderId=request.order_id,
            )
        except (PersistenceError, EnqueueError) as e:
            metrics.record_ingestion("failed")
            return _response(500, "Failed to process order", error=str(e), orderId=request.order_id)
        except PipelineError as e:
            metrics.record_ingestion("failed")
            log_exception(logger, e, "Unexpected pipeline error during ingestion", order_id=request.order_id)
            return _response(500, "Failed to process order", error=str(e), orderId=request.order_id)

        metrics.record_ingestion("accepted")
        return _response(200, result.message, orderId=result.order_id)

    async def ingest(self, request: OrderRequest) -> IngestionResult:
        """Accept an order once; repeats return the first result.

        Raises:
            InProgressError: The same request is still being ingested
            PersistenceError: The order could not be written
            EnqueueError: An item could not be sent to the work queue
        """
        fingerprint = compute_fingerprint(request.order_id, request.wire_payload())
        stored = await self.guard.execute(fingerprint, lambda: self._ingest(request))
        return IngestionResult.model_validate(stored)

    async def _ingest(self, request: OrderRequest) -> dict[str, Any]:
        order, items = build_records(request, to_iso(self._clock()))

        try:
            stored = await self.store.transact_write_order(order, items)
        except Exception as e:
            error = wrap_exception(
                e,
                default_class=PersistenceError,
                context={"order_id": order.order_id, "operation": "transact_write"},
            )
            log_exception(logger, error, "Failed to add order to work store", order_id=order.order_id)
            if error is e:
                raise
            raise error from e

        logger.info(
            f"Added order {order.order_id} with {order.total_items} items",
            extra={
                "order_id": order.order_id,
                "user_id": order.user_id,
                "total_items": order.total_items,
                "total_value": order.total_value,
            },
        )

        # Items finished by an earlier attempt keep their status and are not sent again
        pending = [item for item in stored if item.item_status == ItemStatus.PENDING]
        if len(pending) < len(stored):
            logger.info(
                f"Skipping {len(stored) - len(pending)} items already finished",
                extra={"order_id": order.order_id, "total_items": order.total_items},
            )
        enqueued = await self._enqueue_items(request.user_id, pending)

        result = IngestionResult(
            order_id=order.order_id,
            total_items=order.total_items,
            total_value=order.total_value,
            enqueued=enqueued,
        )
        return result.model_dump(by_alias=True, mode="json")

    async def _enqueue_items(self, user_id: str, items: list[ItemRecord]) -> int:
        """Send items in order. Dedup ids are unique to this attempt."""
        attempt_token = uuid.uuid4().hex[:12]

        for index, item in enumerate(items):
            message = ItemMessage.from_record(item, user_id)
            deduplication_id = f"{item.item_id}-{attempt_token}-{index}"
            try:
                await self.queue.send(
                    message.to_body(),
                    partition_key=item.order_id,
                    deduplication_id=deduplication_id,
                )
            except Exception as e:
                error = EnqueueError(
                    f"Failed to enqueue item {item.item_id}",
                    enqueued=index,
                    cause=e,
                    context={"order_id": item.order_id, "item_id": item.item_id},
                )
                log_exception(
                    logger,
                    error,
                    "Partial enqueue; remaining items stay PENDING for reconciliation",
                    order_id=item.order_id,
                    item_id=item.item_id,
                    enqueued=index,
                )
                raise error from e

        logger.info(
            f"Enqueued {len(items)} items",
            extra={
                "order_id": items[0].order_id if items else None,
                "queue_name": self.queue.name,
                "enqueued": len(items),
            },
        )
        return len(items)
