"""Shared fixtures for workpipe tests."""

import pytest

from workpipe.common.idempotency import IdempotencyGuard
from workpipe.common.queue import OrderedWorkQueue, RedrivePolicy
from workpipe.common.types import ReceivedMessage, to_iso
from workpipe.schemas import ItemMessage, ItemRecord, OrderRecord


def order_event(order_id="order-001", user_id="user-1", items=None):
    """Ingestion request as it arrives on the wire."""
    if items is None:
        items = [{"itemDetail": "Laptop", "quantity": 1, "price": 999.99}]
    return {
        "orderId": order_id,
        "userId": user_id,
        "orderStatus": "PENDING",
        "orderItems": items,
    }


def item_message(order_id="order-001", index=0, user_id="user-1", timestamp="2026-01-05T14:30:00Z"):
    return ItemMessage(
        order_id=order_id,
        user_id=user_id,
        item_id=f"{order_id}-item-{index}",
        item_detail="Laptop",
        quantity=1,
        price=999.99,
        timestamp=timestamp,
    )


def received(body, queue_name="orders-work-queue.fifo", receive_count=1, partition_key="order-001"):
    return ReceivedMessage(
        queue_name=queue_name,
        message_id="m-1",
        body=body,
        partition_key=partition_key,
        deduplication_id="d-1",
        sequence_number=1,
        receipt_handle="m-1:abc",
        receive_count=receive_count,
        sent_timestamp=0.0,
    )


async def seed_order(store, clock, order_id="order-001", count=1, user_id="user-1"):
    """Write an order with ``count`` PENDING items; returns the item records."""
    timestamp = to_iso(clock())
    items = [
        ItemRecord(
            order_id=order_id,
            item_id=f"{order_id}-item-{n}",
            item_detail=f"Item {n}",
            quantity=1,
            price=10.0,
            timestamp=timestamp,
        )
        for n in range(count)
    ]
    order = OrderRecord(
        order_id=order_id,
        user_id=user_id,
        order_status="PENDING",
        timestamp=timestamp,
        total_items=count,
        total_value=10.0 * count,
    )
    await store.transact_write_order(order, items)
    return items


@pytest.fixture
def dlq(clock):
    return OrderedWorkQueue("orders-dead-letter-queue.fifo", ordered=False, clock=clock)


@pytest.fixture
def work_queue(clock, dlq):
    return OrderedWorkQueue(
        "orders-work-queue.fifo",
        visibility_timeout=30,
        redrive_policy=RedrivePolicy(dead_letter_queue=dlq, max_receive_count=3),
        clock=clock,
    )


@pytest.fixture
def guard(store, clock):
    return IdempotencyGuard(store, ttl_seconds=3600, in_progress_timeout_seconds=60, clock=clock)


@pytest.fixture
def make_order_event():
    return order_event


@pytest.fixture
def make_item_message():
    return item_message


@pytest.fixture
def make_received():
    return received


@pytest.fixture
def seed(store, clock):
    async def _seed(order_id="order-001", count=1, user_id="user-1"):
        return await seed_order(store, clock, order_id=order_id, count=count, user_id=user_id)

    return _seed
