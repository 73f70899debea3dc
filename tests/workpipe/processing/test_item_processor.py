"""Tests for the item processor."""

from unittest.mock import AsyncMock, patch

import pytest

from core.errors.exceptions import (
    ConditionalCheckFailedError,
    PersistenceError,
    ProcessingFailure,
)
from workpipe.processing import ItemProcessor
from workpipe.schemas import ItemStatus


@pytest.fixture
def work():
    return AsyncMock()


@pytest.fixture
def processor(store, work, clock):
    return ItemProcessor(store, work, clock=clock)


class TestProcess:

    @pytest.mark.asyncio
    async def test_success_marks_processed(self, processor, store, work, seed, make_item_message, clock):
        await seed()
        item = make_item_message()

        assert await processor.process(item) is True

        work.assert_awaited_once_with(item)
        stored = await store.get_item("order-001", "order-001-item-0")
        assert stored.item_status == ItemStatus.PROCESSED
        assert stored.processed_at == "2023-11-14T22:13:20Z"
        assert processor.get_stats()["records_succeeded"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [ItemStatus.PROCESSED, ItemStatus.FAILED])
    async def test_terminal_item_skipped(self, processor, store, work, seed, make_item_message, status):
        await seed()
        await store.update_item_status("order-001", "order-001-item-0", status, "2026-01-05T14:31:00Z")

        assert await processor.process(make_item_message()) is False

        work.assert_not_awaited()
        stored = await store.get_item("order-001", "order-001-item-0")
        assert stored.item_status == status
        assert processor.get_stats()["records_skipped"] == 1

    @pytest.mark.asyncio
    async def test_work_failure_leaves_item_pending(self, processor, store, work, seed, make_item_message):
        await seed()
        work.side_effect = RuntimeError("downstream unavailable")

        with pytest.raises(ProcessingFailure) as exc_info:
            await processor.process(make_item_message())

        assert isinstance(exc_info.value.cause, RuntimeError)
        stored = await store.get_item("order-001", "order-001-item-0")
        assert stored.item_status == ItemStatus.PENDING

    @pytest.mark.asyncio
    async def test_processing_failure_passes_through(self, processor, work, seed, make_item_message):
        await seed()
        failure = ProcessingFailure("simulated")
        work.side_effect = failure

        with pytest.raises(ProcessingFailure) as exc_info:
            await processor.process(make_item_message())
        assert exc_info.value is failure

    @pytest.mark.asyncio
    async def test_missing_item(self, processor, work, make_item_message):
        with pytest.raises(ProcessingFailure, match="not found"):
            await processor.process(make_item_message())
        work.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lost_race_left_unchanged(self, processor, store, work, seed, make_item_message):
        await seed()

        async def dlq_wins(item):
            await store.update_item_status(
                item.order_id, item.item_id, ItemStatus.FAILED, "2026-01-05T14:31:00Z"
            )

        work.side_effect = dlq_wins

        assert await processor.process(make_item_message()) is False

        stored = await store.get_item("order-001", "order-001-item-0")
        assert stored.item_status == ItemStatus.FAILED
        assert stored.processed_at is None

    @pytest.mark.asyncio
    async def test_store_read_failure(self, processor, store, make_item_message):
        with patch.object(store, "get_item", side_effect=OSError("disk gone")):
            with pytest.raises(PersistenceError):
                await processor.process(make_item_message())

    @pytest.mark.asyncio
    async def test_transition_listener(self, store, work, seed, make_item_message, clock):
        listener = AsyncMock()
        processor = ItemProcessor(store, work, clock=clock, on_transition=listener)
        await seed()

        await processor.process(make_item_message())

        [updated] = listener.await_args.args
        assert updated.item_status == ItemStatus.PROCESSED


class TestHandleMessage:

    @pytest.mark.asyncio
    async def test_parses_body(self, processor, store, seed, make_item_message, make_received):
        await seed()

        await processor.handle_message(make_received(make_item_message().to_body()))

        stored = await store.get_item("order-001", "order-001-item-0")
        assert stored.item_status == ItemStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_malformed_payload(self, processor, work, make_received):
        with pytest.raises(ProcessingFailure, match="Malformed"):
            await processor.handle_message(make_received('{"orderId": "order-001"}'))

        work.assert_not_awaited()
        assert processor.get_stats()["records_failed"] == 1

    @pytest.mark.asyncio
    async def test_failure_counted(self, processor, work, seed, make_item_message, make_received):
        await seed()
        work.side_effect = ProcessingFailure("simulated")

        with pytest.raises(ProcessingFailure):
            await processor.handle_message(make_received(make_item_message().to_body()))

        assert processor.get_stats() == {
            "records_succeeded": 0,
            "records_skipped": 0,
            "records_failed": 1,
        }

    def test_conditional_check_error_is_permanent(self):
        assert not ConditionalCheckFailedError("x").is_retryable
