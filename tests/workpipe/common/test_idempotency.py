"""Tests for the idempotency guard."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from core.errors.exceptions import InProgressError, PersistenceError
from workpipe.common.idempotency import IdempotencyGuard, compute_fingerprint
from workpipe.schemas import IdempotencyStatus


class TestComputeFingerprint:

    def test_key_order_does_not_matter(self):
        a = compute_fingerprint("order-001", {"orderId": "order-001", "userId": "u"})
        b = compute_fingerprint("order-001", {"userId": "u", "orderId": "order-001"})
        assert a == b
        assert a.startswith("order-001#")

    def test_content_change_changes_fingerprint(self):
        a = compute_fingerprint("order-001", {"orderItems": [{"quantity": 1}]})
        b = compute_fingerprint("order-001", {"orderItems": [{"quantity": 2}]})
        assert a != b


class TestIdempotencyGuard:

    def test_invalid_settings(self, store):
        with pytest.raises(ValueError):
            IdempotencyGuard(store, ttl_seconds=0)
        with pytest.raises(ValueError):
            IdempotencyGuard(store, in_progress_timeout_seconds=0)

    @pytest.mark.asyncio
    async def test_first_call_executes_and_stores_result(self, guard, store):
        body = AsyncMock(return_value={"orderId": "order-001"})

        result = await guard.execute("order-001#abc", body)

        assert result == {"orderId": "order-001"}
        body.assert_awaited_once()
        record = await store.get_idempotency_record("order-001#abc")
        assert record.status == IdempotencyStatus.COMPLETED
        assert record.in_progress_expiration is None
        assert record.result == {"orderId": "order-001"}

    @pytest.mark.asyncio
    async def test_repeat_call_replays_without_running_body(self, guard):
        first = AsyncMock(return_value={"orderId": "order-001"})
        second = AsyncMock(return_value={"orderId": "other"})

        await guard.execute("order-001#abc", first)
        result = await guard.execute("order-001#abc", second)

        assert result == {"orderId": "order-001"}
        second.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_call_raises_in_progress(self, guard):
        release = asyncio.Event()

        async def slow_body():
            await release.wait()
            return {"ok": True}

        first = asyncio.create_task(guard.execute("order-001#abc", slow_body))
        await asyncio.sleep(0)

        with pytest.raises(InProgressError) as exc_info:
            await guard.execute("order-001#abc", AsyncMock())
        assert exc_info.value.fingerprint == "order-001#abc"

        release.set()
        assert await first == {"ok": True}

    @pytest.mark.asyncio
    async def test_failed_body_clears_marker(self, guard, store):
        body = AsyncMock(side_effect=PersistenceError("write failed"))

        with pytest.raises(PersistenceError):
            await guard.execute("order-001#abc", body)

        assert await store.get_idempotency_record("order-001#abc") is None
        retry = AsyncMock(return_value={"ok": True})
        assert await guard.execute("order-001#abc", retry) == {"ok": True}

    @pytest.mark.asyncio
    async def test_expired_result_runs_again(self, guard, clock):
        await guard.execute("order-001#abc", AsyncMock(return_value={"run": 1}))
        clock.advance(3600)

        result = await guard.execute("order-001#abc", AsyncMock(return_value={"run": 2}))

        assert result == {"run": 2}

    @pytest.mark.asyncio
    async def test_abandoned_in_progress_marker_taken_over(self, guard, store, clock):
        release = asyncio.Event()

        async def stuck_body():
            await release.wait()
            return {"run": 1}

        stuck = asyncio.create_task(guard.execute("order-001#abc", stuck_body))
        await asyncio.sleep(0)
        clock.advance(61)

        result = await guard.execute("order-001#abc", AsyncMock(return_value={"run": 2}))

        assert result == {"run": 2}
        release.set()
        await stuck
