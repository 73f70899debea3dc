"""Tests for the order ingestion service."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from core.errors.exceptions import EnqueueError, PersistenceError
from workpipe.common.idempotency import compute_fingerprint
from workpipe.ingestion import OrderIngestionService
from workpipe.ingestion.service import build_records
from workpipe.processing import ItemProcessor
from workpipe.schemas import (
    IdempotencyRecord,
    IdempotencyStatus,
    ItemMessage,
    ItemStatus,
    OrderRequest,
)


@pytest.fixture
def service(store, work_queue, guard, clock):
    return OrderIngestionService(store, work_queue, guard, clock=clock)


def _three_items():
    return [
        {"itemDetail": "Laptop", "quantity": 1, "price": 999.99},
        {"itemDetail": "Mouse", "quantity": 2, "price": 19.995},
        {"itemDetail": "Cable", "quantity": 3, "price": 0.1},
    ]


class TestBuildRecords:

    def test_totals_and_item_ids(self, make_order_event):
        request = OrderRequest.model_validate(make_order_event(items=_three_items()))

        order, items = build_records(request, "2026-01-05T14:30:00Z")

        assert order.total_items == 3
        assert order.total_value == 1040.28
        assert [i.item_id for i in items] == [
            "order-001-item-0",
            "order-001-item-1",
            "order-001-item-2",
        ]
        assert all(i.item_status == ItemStatus.PENDING for i in items)
        assert {i.timestamp for i in items} == {"2026-01-05T14:30:00Z"}


class TestHandle:

    @pytest.mark.asyncio
    async def test_accepts_order(self, service, store, work_queue, make_order_event):
        response = await service.handle(make_order_event())

        assert response == {
            "statusCode": 200,
            "body": {"message": "Orders processed successfully", "orderId": "order-001"},
        }
        order = await store.get_order("order-001")
        assert order.total_value == 999.99
        item = await store.get_item("order-001", "order-001-item-0")
        assert item.item_status == ItemStatus.PENDING

        [queued] = work_queue.peek()
        assert queued.partition_key == "order-001"
        message = ItemMessage.model_validate_json(queued.body)
        assert message.item_id == "order-001-item-0"
        assert message.user_id == "user-1"

    @pytest.mark.asyncio
    async def test_accepts_json_string(self, service, make_order_event):
        response = await service.handle(json.dumps(make_order_event()))
        assert response["statusCode"] == 200

    @pytest.mark.asyncio
    async def test_items_enqueued_in_order(self, service, work_queue, make_order_event):
        await service.handle(make_order_event(items=_three_items()))

        bodies = [ItemMessage.model_validate_json(m.body) for m in work_queue.peek()]
        assert [b.item_id for b in bodies] == [
            "order-001-item-0",
            "order-001-item-1",
            "order-001-item-2",
        ]
        assert len({m.deduplication_id for m in work_queue.peek()}) == 3

    @pytest.mark.asyncio
    async def test_invalid_request(self, service, store, work_queue, make_order_event):
        event = make_order_event()
        del event["userId"]

        response = await service.handle(event)

        assert response["statusCode"] == 400
        assert "error" in response["body"]
        assert await store.list_orders() == []
        assert work_queue.is_empty()

    @pytest.mark.asyncio
    async def test_malformed_json(self, service):
        response = await service.handle("{not json")
        assert response["statusCode"] == 400

    @pytest.mark.asyncio
    async def test_repeat_request_replayed(self, service, work_queue, make_order_event):
        first = await service.handle(make_order_event())
        second = await service.handle(make_order_event())

        assert first == second
        assert len(work_queue) == 1

    @pytest.mark.asyncio
    async def test_changed_request_is_new_fingerprint(self, service, work_queue, make_order_event):
        await service.handle(make_order_event())
        changed = make_order_event(items=[{"itemDetail": "Laptop", "quantity": 2, "price": 999.99}])

        response = await service.handle(changed)

        assert response["statusCode"] == 200
        assert len(work_queue) == 2

    @pytest.mark.asyncio
    async def test_request_in_flight(self, service, store, clock, make_order_event):
        request = OrderRequest.model_validate(make_order_event())
        fingerprint = compute_fingerprint(request.order_id, request.wire_payload())
        await store.put_idempotency_record_if_absent(
            IdempotencyRecord(
                fingerprint=fingerprint,
                status=IdempotencyStatus.INPROGRESS,
                expiration=int(clock()) + 3600,
                in_progress_expiration=int(clock()) + 60,
            )
        )

        response = await service.handle(make_order_event())

        assert response["statusCode"] == 409
        assert response["body"]["orderId"] == "order-001"

    @pytest.mark.asyncio
    async def test_store_failure(self, service, store, work_queue, make_order_event):
        with patch.object(store, "transact_write_order", side_effect=RuntimeError("table down")):
            response = await service.handle(make_order_event())

        assert response["statusCode"] == 500
        assert response["body"]["message"] == "Failed to process order"
        assert work_queue.is_empty()
        fingerprint_rows = [
            r for r in store._idempotency.values() if r.fingerprint.startswith("order-001#")
        ]
        assert fingerprint_rows == []

    @pytest.mark.asyncio
    async def test_store_failure_raises_persistence_error(self, service, store, make_order_event):
        request = OrderRequest.model_validate(make_order_event())
        with patch.object(store, "transact_write_order", side_effect=RuntimeError("table down")):
            with pytest.raises(PersistenceError):
                await service.ingest(request)


class TestPartialEnqueue:

    @pytest.mark.asyncio
    async def test_enqueue_failure_reports_progress(self, service, store, work_queue, make_order_event):
        request = OrderRequest.model_validate(make_order_event(items=_three_items()))
        original_send = work_queue.send
        calls = []

        async def flaky_send(*args, **kwargs):
            calls.append(kwargs["deduplication_id"])
            if len(calls) == 2:
                raise RuntimeError("queue down")
            return await original_send(*args, **kwargs)

        with patch.object(work_queue, "send", side_effect=flaky_send):
            with pytest.raises(EnqueueError) as exc_info:
                await service.ingest(request)

        assert exc_info.value.enqueued == 1
        assert len(work_queue) == 1
        # Written items are not rolled back
        items = await store.list_items("order-001")
        assert len(items) == 3
        assert all(i.item_status == ItemStatus.PENDING for i in items)

    @pytest.mark.asyncio
    async def test_retry_after_partial_enqueue(self, service, work_queue, make_order_event):
        original_send = work_queue.send
        failed = []

        async def fail_once(*args, **kwargs):
            if not failed:
                failed.append(True)
                raise RuntimeError("queue down")
            return await original_send(*args, **kwargs)

        with patch.object(work_queue, "send", side_effect=fail_once):
            first = await service.handle(make_order_event())
            second = await service.handle(make_order_event())

        assert first["statusCode"] == 500
        assert second["statusCode"] == 200
        assert len(work_queue) == 1


class TestFinishedItemsKept:
    """Re-running ingestion never reopens an item that already finished."""

    async def _process_next(self, store, work_queue, work, clock):
        [message] = await work_queue.receive()
        await ItemProcessor(store, work, clock=clock).handle_message(message)
        await work_queue.delete(message.receipt_handle)
        return ItemMessage.model_validate_json(message.body)

    @pytest.mark.asyncio
    async def test_retry_after_partial_enqueue_skips_processed_item(
        self, service, store, work_queue, clock, make_order_event
    ):
        event = make_order_event(items=_three_items()[:2])
        original_send = work_queue.send
        calls = []

        async def fail_second(*args, **kwargs):
            calls.append(kwargs["deduplication_id"])
            if len(calls) == 2:
                raise RuntimeError("queue down")
            return await original_send(*args, **kwargs)

        with patch.object(work_queue, "send", side_effect=fail_second):
            first = await service.handle(event)
        assert first["statusCode"] == 500

        work = AsyncMock()
        processed = await self._process_next(store, work_queue, work, clock)
        assert processed.item_id == "order-001-item-0"

        second = await service.handle(event)

        assert second["statusCode"] == 200
        item = await store.get_item("order-001", "order-001-item-0")
        assert item.item_status == ItemStatus.PROCESSED
        assert item.processed_at is not None
        queued = [ItemMessage.model_validate_json(m.body).item_id for m in work_queue.peek()]
        assert queued == ["order-001-item-1"]
        assert work.await_count == 1

    @pytest.mark.asyncio
    async def test_resubmit_after_ttl_keeps_terminal_items(
        self, service, store, work_queue, clock, make_order_event
    ):
        await service.handle(make_order_event())
        await self._process_next(store, work_queue, AsyncMock(), clock)

        clock.advance(3601)
        response = await service.handle(make_order_event())

        assert response["statusCode"] == 200
        item = await store.get_item("order-001", "order-001-item-0")
        assert item.item_status == ItemStatus.PROCESSED
        assert item.processed_at is not None
        assert work_queue.is_empty()

    @pytest.mark.asyncio
    async def test_resubmit_after_ttl_keeps_failed_item(
        self, service, store, work_queue, clock, make_order_event
    ):
        await service.handle(make_order_event())
        [message] = await work_queue.receive()
        await work_queue.delete(message.receipt_handle)
        await store.update_item_status("order-001", "order-001-item-0", ItemStatus.FAILED, "t1")

        clock.advance(3601)
        await service.handle(make_order_event())

        item = await store.get_item("order-001", "order-001-item-0")
        assert item.item_status == ItemStatus.FAILED
        assert item.failed_at == "t1"
        assert work_queue.is_empty()
