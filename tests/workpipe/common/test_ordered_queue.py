"""Tests for the partitioned FIFO work queue."""

import asyncio

import pytest

from workpipe.common.queue import OrderedWorkQueue, RedrivePolicy


async def _receive_one(queue):
    messages = await queue.receive(max_messages=1)
    assert len(messages) == 1
    return messages[0]


class TestSend:

    @pytest.mark.asyncio
    async def test_ordered_queue_requires_partition_key(self, work_queue):
        with pytest.raises(ValueError, match="partition_key is required"):
            await work_queue.send("body")

    @pytest.mark.asyncio
    async def test_unordered_queue_accepts_no_partition_key(self, dlq):
        result = await dlq.send("body")
        assert result.duplicate is False
        assert len(dlq) == 1

    @pytest.mark.asyncio
    async def test_sequence_numbers_increase(self, work_queue):
        first = await work_queue.send("a", partition_key="p", deduplication_id="1")
        second = await work_queue.send("b", partition_key="p", deduplication_id="2")
        assert second.sequence_number > first.sequence_number

    @pytest.mark.asyncio
    async def test_duplicate_inside_window_coalesced(self, work_queue):
        first = await work_queue.send("a", partition_key="p", deduplication_id="1")
        again = await work_queue.send("a changed", partition_key="p", deduplication_id="1")

        assert again.duplicate is True
        assert again.message_id == first.message_id
        assert len(work_queue) == 1

    @pytest.mark.asyncio
    async def test_same_dedup_id_other_partition_is_distinct(self, work_queue):
        await work_queue.send("a", partition_key="p1", deduplication_id="1")
        result = await work_queue.send("a", partition_key="p2", deduplication_id="1")
        assert result.duplicate is False
        assert len(work_queue) == 2

    @pytest.mark.asyncio
    async def test_duplicate_after_window_accepted(self, work_queue, clock):
        await work_queue.send("a", partition_key="p", deduplication_id="1")
        clock.advance(301)
        result = await work_queue.send("a", partition_key="p", deduplication_id="1")
        assert result.duplicate is False
        assert len(work_queue) == 2

    @pytest.mark.asyncio
    async def test_content_based_dedup_without_id(self, work_queue):
        await work_queue.send("same body", partition_key="p")
        result = await work_queue.send("same body", partition_key="p")
        other = await work_queue.send("other body", partition_key="p")

        assert result.duplicate is True
        assert other.duplicate is False
        assert len(work_queue) == 2


class TestOrdering:

    @pytest.mark.asyncio
    async def test_partition_delivered_in_send_order(self, work_queue):
        for n in range(3):
            await work_queue.send(f"item-{n}", partition_key="order-001", deduplication_id=str(n))

        seen = []
        for _ in range(3):
            message = await _receive_one(work_queue)
            seen.append(message.body)
            assert await work_queue.delete(message.receipt_handle)

        assert seen == ["item-0", "item-1", "item-2"]

    @pytest.mark.asyncio
    async def test_one_in_flight_per_partition(self, work_queue):
        await work_queue.send("a0", partition_key="a", deduplication_id="0")
        await work_queue.send("a1", partition_key="a", deduplication_id="1")
        await work_queue.send("b0", partition_key="b", deduplication_id="0")

        messages = await work_queue.receive(max_messages=10)

        assert [m.body for m in messages] == ["a0", "b0"]
        assert await work_queue.receive(max_messages=10) == []

    @pytest.mark.asyncio
    async def test_in_flight_head_blocks_partition(self, work_queue, clock):
        await work_queue.send("a0", partition_key="a", deduplication_id="0")
        await work_queue.send("a1", partition_key="a", deduplication_id="1")

        head = await _receive_one(work_queue)
        assert await work_queue.receive() == []

        # Unacknowledged head comes back before a1
        clock.advance(31)
        again = await _receive_one(work_queue)
        assert again.message_id == head.message_id
        assert again.receive_count == 2

    @pytest.mark.asyncio
    async def test_unordered_queue_delivers_any_visible(self, dlq):
        await dlq.send("x", partition_key="p")
        await dlq.send("y", partition_key="p")

        messages = await dlq.receive(max_messages=10)

        assert [m.body for m in messages] == ["x", "y"]


class TestVisibilityAndAck:

    @pytest.mark.asyncio
    async def test_invisible_until_timeout(self, work_queue, clock):
        await work_queue.send("a", partition_key="p", deduplication_id="1")
        await _receive_one(work_queue)

        clock.advance(29)
        assert await work_queue.receive() == []
        clock.advance(1)
        message = await _receive_one(work_queue)
        assert message.receive_count == 2

    @pytest.mark.asyncio
    async def test_delete_removes_message(self, work_queue):
        await work_queue.send("a", partition_key="p", deduplication_id="1")
        message = await _receive_one(work_queue)

        assert await work_queue.delete(message.receipt_handle) is True
        assert work_queue.is_empty()

    @pytest.mark.asyncio
    async def test_stale_receipt_handle_rejected(self, work_queue, clock):
        await work_queue.send("a", partition_key="p", deduplication_id="1")
        first = await _receive_one(work_queue)
        clock.advance(31)
        second = await _receive_one(work_queue)

        assert await work_queue.delete(first.receipt_handle) is False
        assert len(work_queue) == 1
        assert await work_queue.delete(second.receipt_handle) is True

    @pytest.mark.asyncio
    async def test_unknown_receipt_handle(self, work_queue):
        assert await work_queue.delete("nope") is False

    @pytest.mark.asyncio
    async def test_delete_twice(self, work_queue):
        await work_queue.send("a", partition_key="p", deduplication_id="1")
        message = await _receive_one(work_queue)
        assert await work_queue.delete(message.receipt_handle) is True
        assert await work_queue.delete(message.receipt_handle) is False

    @pytest.mark.asyncio
    async def test_change_visibility_extends_window(self, work_queue, clock):
        await work_queue.send("a", partition_key="p", deduplication_id="1")
        message = await _receive_one(work_queue)

        clock.advance(20)
        assert await work_queue.change_visibility(message.receipt_handle, 30) is True
        clock.advance(20)
        assert await work_queue.receive() == []

        clock.advance(10)
        again = await _receive_one(work_queue)
        assert again.receive_count == 2
        assert await work_queue.change_visibility(message.receipt_handle, 30) is False


class TestRedrive:

    @pytest.mark.asyncio
    async def test_moved_to_dlq_after_max_receives(self, work_queue, dlq, clock):
        sent = await work_queue.send("poison", partition_key="order-001", deduplication_id="1")

        deliveries = []
        for _ in range(3):
            message = await _receive_one(work_queue)
            deliveries.append(message.receive_count)
            clock.advance(31)

        # Fourth attempt redrives instead of delivering
        assert await work_queue.receive() == []
        assert deliveries == [1, 2, 3]
        assert work_queue.is_empty()

        [dead] = await dlq.receive(max_messages=10)
        assert dead.message_id == sent.message_id
        assert dead.body == "poison"
        assert dead.receive_count == 1
        assert dead.sent_timestamp == clock.now - 93

    @pytest.mark.asyncio
    async def test_redrive_unblocks_partition(self, work_queue, dlq, clock):
        await work_queue.send("poison", partition_key="order-001", deduplication_id="1")
        await work_queue.send("next", partition_key="order-001", deduplication_id="2")

        for _ in range(3):
            await _receive_one(work_queue)
            clock.advance(31)

        message = await _receive_one(work_queue)
        assert message.body == "next"
        assert len(dlq) == 1

    @pytest.mark.asyncio
    async def test_acknowledged_message_never_redriven(self, work_queue, dlq, clock):
        await work_queue.send("ok", partition_key="p", deduplication_id="1")
        await _receive_one(work_queue)
        clock.advance(31)
        await _receive_one(work_queue)
        clock.advance(31)
        third = await _receive_one(work_queue)
        await work_queue.delete(third.receipt_handle)

        assert await work_queue.receive() == []
        assert dlq.is_empty()

    def test_invalid_policy(self, dlq):
        with pytest.raises(ValueError):
            RedrivePolicy(dead_letter_queue=dlq, max_receive_count=0)


class TestRetention:

    @pytest.mark.asyncio
    async def test_expired_messages_dropped(self, clock):
        queue = OrderedWorkQueue("q", retention_period=60, clock=clock)
        await queue.send("old", partition_key="p", deduplication_id="1")
        clock.advance(61)

        assert await queue.receive() == []
        assert queue.is_empty()


class TestLongPoll:

    @pytest.mark.asyncio
    async def test_returns_empty_after_wait(self, work_queue):
        assert await work_queue.receive(wait_seconds=0.1) == []

    @pytest.mark.asyncio
    async def test_wakes_on_send(self, work_queue):
        async def send_later():
            await asyncio.sleep(0.02)
            await work_queue.send("late", partition_key="p", deduplication_id="1")

        sender = asyncio.create_task(send_later())
        messages = await work_queue.receive(wait_seconds=2.0)
        await sender

        assert [m.body for m in messages] == ["late"]

    @pytest.mark.asyncio
    async def test_invalid_max_messages(self, work_queue):
        with pytest.raises(ValueError):
            await work_queue.receive(max_messages=0)


class TestIntrospection:

    @pytest.mark.asyncio
    async def test_attributes(self, work_queue):
        await work_queue.send("a", partition_key="a", deduplication_id="1")
        await work_queue.send("b", partition_key="b", deduplication_id="1")
        await _receive_one(work_queue)

        attrs = work_queue.attributes()
        assert attrs["ApproximateNumberOfMessages"] == 1
        assert attrs["ApproximateNumberOfMessagesNotVisible"] == 1
        assert attrs["FifoQueue"] is True
        assert attrs["RedrivePolicy"] == {
            "deadLetterTargetArn": "orders-dead-letter-queue.fifo",
            "maxReceiveCount": 3,
        }

    @pytest.mark.asyncio
    async def test_peek_does_not_deliver(self, work_queue):
        await work_queue.send("a", partition_key="p", deduplication_id="1")
        [peeked] = work_queue.peek()

        assert peeked.receive_count == 0
        message = await _receive_one(work_queue)
        assert message.receive_count == 1

    @pytest.mark.asyncio
    async def test_purge(self, work_queue):
        await work_queue.send("a", partition_key="p", deduplication_id="1")
        assert await work_queue.purge() == 1
        assert work_queue.is_empty()
