"""Tests for log context and queue message context variables."""

import asyncio

import pytest

from core.logging.context import clear_log_context, get_log_context, set_log_context
from core.logging.message_context import (
    MessageLogContext,
    clear_message_context,
    get_message_context,
    set_message_context,
)


@pytest.fixture(autouse=True)
def clear_context():
    clear_log_context()
    clear_message_context()
    yield
    clear_log_context()
    clear_message_context()


class TestLogContext:

    def test_defaults_are_empty(self):
        assert get_log_context() == {
            "cycle_id": "",
            "stage": "",
            "worker_id": "",
            "domain": "",
            "trace_id": "",
            "order_id": "",
        }

    def test_set_only_given_fields(self):
        set_log_context(stage="pipeline", domain="orders")
        set_log_context(worker_id="dlq-handler-0")

        context = get_log_context()
        assert context["stage"] == "pipeline"
        assert context["domain"] == "orders"
        assert context["worker_id"] == "dlq-handler-0"

    def test_clear(self):
        set_log_context(order_id="order-001")
        clear_log_context()
        assert get_log_context()["order_id"] == ""

    @pytest.mark.asyncio
    async def test_tasks_get_isolated_copies(self):
        set_log_context(stage="pipeline")

        async def worker(name):
            set_log_context(worker_id=name)
            await asyncio.sleep(0)
            return get_log_context()["worker_id"], get_log_context()["stage"]

        results = await asyncio.gather(worker("a"), worker("b"))

        assert results == [("a", "pipeline"), ("b", "pipeline")]
        assert get_log_context()["worker_id"] == ""


class TestMessageContext:

    def test_empty_by_default(self):
        assert get_message_context() == {}

    def test_receive_count_zero_is_kept(self):
        set_message_context(receive_count=0)
        assert get_message_context() == {"receive_count": 0}

    def test_context_manager_sets_and_restores(self):
        set_message_context(queue_name="outer")

        with MessageLogContext(queue_name="inner", message_id="m-1", receive_count=1):
            assert get_message_context() == {
                "queue_name": "inner",
                "message_id": "m-1",
                "receive_count": 1,
            }

        assert get_message_context() == {"queue_name": "outer"}

    def test_context_manager_restores_on_error(self):
        with pytest.raises(RuntimeError):
            with MessageLogContext(partition_key="order-001"):
                raise RuntimeError("boom")

        assert get_message_context() == {}
