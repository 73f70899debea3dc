"""Tests for the in-memory work store."""

import pytest

from core.errors.exceptions import ConditionalCheckFailedError
from workpipe.common.store import InMemoryWorkStore, WorkStore
from workpipe.schemas import (
    IdempotencyRecord,
    IdempotencyStatus,
    ItemRecord,
    ItemStatus,
    OrderRecord,
)


def _order(order_id="order-001", user_id="user-1"):
    return OrderRecord(
        order_id=order_id,
        user_id=user_id,
        order_status="PENDING",
        timestamp="2026-01-05T14:30:00Z",
        total_items=1,
        total_value=999.99,
    )


def _item(order_id="order-001", index=0):
    return ItemRecord(
        order_id=order_id,
        item_id=f"{order_id}-item-{index}",
        item_detail="Laptop",
        quantity=1,
        price=999.99,
        timestamp="2026-01-05T14:30:00Z",
    )


class TestOrdersAndItems:

    def test_satisfies_protocol(self, store):
        assert isinstance(store, WorkStore)

    @pytest.mark.asyncio
    async def test_transact_write_and_read(self, store):
        await store.transact_write_order(_order(), [_item(index=0), _item(index=1)])

        order = await store.get_order("order-001")
        assert order.total_value == 999.99
        items = await store.list_items("order-001")
        assert [i.item_id for i in items] == ["order-001-item-0", "order-001-item-1"]
        assert all(i.item_status == ItemStatus.PENDING for i in items)

    @pytest.mark.asyncio
    async def test_rejects_foreign_items(self, store):
        with pytest.raises(ValueError):
            await store.transact_write_order(_order(), [_item(order_id="order-002")])
        assert await store.get_order("order-001") is None

    @pytest.mark.asyncio
    async def test_rejects_duplicate_items(self, store):
        with pytest.raises(ValueError):
            await store.transact_write_order(_order(), [_item(), _item()])

    @pytest.mark.asyncio
    async def test_rewrite_keeps_existing_rows(self, store):
        await store.transact_write_order(_order(), [_item(index=0)])
        await store.update_item_status("order-001", "order-001-item-0", ItemStatus.PROCESSED, "t1")

        rewritten = _order().model_copy(update={"total_value": 1.0})
        stored = await store.transact_write_order(rewritten, [_item(index=0), _item(index=1)])

        assert [(i.item_id, i.item_status) for i in stored] == [
            ("order-001-item-0", ItemStatus.PROCESSED),
            ("order-001-item-1", ItemStatus.PENDING),
        ]
        assert stored[0].processed_at == "t1"
        assert (await store.get_order("order-001")).total_value == 999.99
        item = await store.get_item("order-001", "order-001-item-0")
        assert item.item_status == ItemStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, store):
        await store.transact_write_order(_order(), [_item()])

        item = await store.get_item("order-001", "order-001-item-0")
        item.item_status = ItemStatus.FAILED

        stored = await store.get_item("order-001", "order-001-item-0")
        assert stored.item_status == ItemStatus.PENDING

    @pytest.mark.asyncio
    async def test_missing_rows(self, store):
        assert await store.get_order("nope") is None
        assert await store.get_item("nope", "nope-item-0") is None
        assert await store.list_items("nope") == []

    @pytest.mark.asyncio
    async def test_secondary_indexes(self, store):
        await store.transact_write_order(_order("order-001", "user-1"), [_item("order-001")])
        await store.transact_write_order(_order("order-002", "user-2"), [_item("order-002")])
        await store.update_item_status(
            "order-002", "order-002-item-0", ItemStatus.PROCESSED, "2026-01-05T14:31:00Z"
        )

        pending = await store.query_items_by_status(ItemStatus.PENDING)
        processed = await store.query_items_by_status(ItemStatus.PROCESSED)
        assert [i.item_id for i in pending] == ["order-001-item-0"]
        assert [i.item_id for i in processed] == ["order-002-item-0"]

        orders = await store.query_orders_by_user("user-2")
        assert [o.order_id for o in orders] == ["order-002"]
        assert len(await store.list_orders()) == 2


class TestUpdateItemStatus:

    @pytest.mark.asyncio
    async def test_pending_to_processed(self, store):
        await store.transact_write_order(_order(), [_item()])

        updated = await store.update_item_status(
            "order-001", "order-001-item-0", ItemStatus.PROCESSED, "2026-01-05T14:31:00Z"
        )

        assert updated.item_status == ItemStatus.PROCESSED
        assert updated.processed_at == "2026-01-05T14:31:00Z"
        assert updated.failed_at is None

    @pytest.mark.asyncio
    async def test_pending_to_failed(self, store):
        await store.transact_write_order(_order(), [_item()])

        updated = await store.update_item_status(
            "order-001", "order-001-item-0", ItemStatus.FAILED, "2026-01-05T14:31:00Z"
        )

        assert updated.failed_at == "2026-01-05T14:31:00Z"
        assert updated.processed_at is None

    @pytest.mark.asyncio
    async def test_terminal_status_never_reversed(self, store):
        await store.transact_write_order(_order(), [_item()])
        await store.update_item_status(
            "order-001", "order-001-item-0", ItemStatus.PROCESSED, "2026-01-05T14:31:00Z"
        )

        with pytest.raises(ConditionalCheckFailedError) as exc_info:
            await store.update_item_status(
                "order-001", "order-001-item-0", ItemStatus.FAILED, "2026-01-05T14:32:00Z"
            )

        assert exc_info.value.current.item_status == ItemStatus.PROCESSED
        item = await store.get_item("order-001", "order-001-item-0")
        assert item.item_status == ItemStatus.PROCESSED
        assert item.failed_at is None

    @pytest.mark.asyncio
    async def test_missing_item(self, store):
        with pytest.raises(ConditionalCheckFailedError) as exc_info:
            await store.update_item_status(
                "order-001", "order-001-item-0", ItemStatus.PROCESSED, "2026-01-05T14:31:00Z"
            )
        assert exc_info.value.current is None


class TestUpdateOrderStatus:

    @pytest.mark.asyncio
    async def test_update(self, store):
        await store.transact_write_order(_order(), [_item()])
        updated = await store.update_order_status("order-001", "PROCESSED")
        assert updated.order_status == "PROCESSED"
        assert (await store.get_order("order-001")).order_status == "PROCESSED"

    @pytest.mark.asyncio
    async def test_missing_order(self, store):
        with pytest.raises(ConditionalCheckFailedError):
            await store.update_order_status("nope", "PROCESSED")


class TestIdempotencyRecords:

    def _record(self, clock, status=IdempotencyStatus.INPROGRESS, ttl=3600, in_progress=60):
        now = int(clock())
        return IdempotencyRecord(
            fingerprint="order-001#abc",
            status=status,
            expiration=now + ttl,
            in_progress_expiration=now + in_progress,
        )

    @pytest.mark.asyncio
    async def test_conditional_put(self, store, clock):
        await store.put_idempotency_record_if_absent(self._record(clock))

        with pytest.raises(ConditionalCheckFailedError) as exc_info:
            await store.put_idempotency_record_if_absent(self._record(clock))
        assert exc_info.value.current.status == IdempotencyStatus.INPROGRESS

    @pytest.mark.asyncio
    async def test_abandoned_in_progress_replaced(self, store, clock):
        await store.put_idempotency_record_if_absent(self._record(clock))
        clock.advance(61)
        await store.put_idempotency_record_if_absent(self._record(clock))

    @pytest.mark.asyncio
    async def test_completed_record_outlives_in_progress_timeout(self, store, clock):
        record = self._record(clock, status=IdempotencyStatus.COMPLETED)
        await store.put_idempotency_record_if_absent(record)
        clock.advance(61)

        with pytest.raises(ConditionalCheckFailedError):
            await store.put_idempotency_record_if_absent(self._record(clock))

    @pytest.mark.asyncio
    async def test_update_get_delete(self, store, clock):
        record = self._record(clock)
        await store.put_idempotency_record_if_absent(record)

        completed = record.model_copy(
            update={"status": IdempotencyStatus.COMPLETED, "result": {"orderId": "order-001"}}
        )
        await store.update_idempotency_record(completed)
        stored = await store.get_idempotency_record(record.fingerprint)
        assert stored.status == IdempotencyStatus.COMPLETED
        assert stored.result == {"orderId": "order-001"}

        await store.delete_idempotency_record(record.fingerprint)
        assert await store.get_idempotency_record(record.fingerprint) is None
        await store.delete_idempotency_record(record.fingerprint)

    @pytest.mark.asyncio
    async def test_purge_expired(self, store, clock):
        await store.put_idempotency_record_if_absent(self._record(clock, ttl=10, in_progress=5))
        assert await store.purge_expired() == 0

        clock.advance(10)
        assert await store.purge_expired() == 1
        assert await store.get_idempotency_record("order-001#abc") is None


class TestTables:

    def test_default_table_names(self):
        store = InMemoryWorkStore()
        assert store.tables.orders == "OrdersTable"
        assert store.tables.items == "OrderItemsTable"
        assert store.tables.idempotency == "IdempotencyTable"
