"""Queue message context variables for structured logging."""

from contextvars import ContextVar
from typing import Any, Dict, Optional

# Queue message context variables
_queue_name: ContextVar[str] = ContextVar("queue_name", default="")
_partition_key: ContextVar[str] = ContextVar("partition_key", default="")
_message_id: ContextVar[str] = ContextVar("message_id", default="")
_receive_count: ContextVar[int] = ContextVar("receive_count", default=-1)


def set_message_context(
    queue_name: Optional[str] = None,
    partition_key: Optional[str] = None,
    message_id: Optional[str] = None,
    receive_count: Optional[int] = None,
) -> None:
    """
    Set queue message context variables for structured logging.

    Args:
        queue_name: Queue the message was received from
        partition_key: Ordering partition of the message
        message_id: Queue-assigned message identifier
        receive_count: How many times the message has been delivered
    """
    if queue_name is not None:
        _queue_name.set(queue_name)
    if partition_key is not None:
        _partition_key.set(partition_key)
    if message_id is not None:
        _message_id.set(message_id)
    if receive_count is not None:
        _receive_count.set(receive_count)


def get_message_context() -> Dict[str, Any]:
    """
    Get current queue message logging context.

    Returns:
        Dictionary with queue_name, partition_key, message_id and receive_count.
        Fields that are not set are omitted.
    """
    context: Dict[str, Any] = {}

    queue_name = _queue_name.get()
    if queue_name:
        context["queue_name"] = queue_name

    partition_key = _partition_key.get()
    if partition_key:
        context["partition_key"] = partition_key

    message_id = _message_id.get()
    if message_id:
        context["message_id"] = message_id

    receive_count = _receive_count.get()
    if receive_count >= 0:
        context["receive_count"] = receive_count

    return context


def clear_message_context() -> None:
    """Clear all queue message logging context variables."""
    _queue_name.set("")
    _partition_key.set("")
    _message_id.set("")
    _receive_count.set(-1)


class MessageLogContext:
    """
    Context manager for message processing with automatic context setting.

    Usage:
        with MessageLogContext(queue_name="orders", partition_key="order-001"):
            # All logs in this block will include message context
            await handle(message)
    """

    def __init__(
        self,
        queue_name: Optional[str] = None,
        partition_key: Optional[str] = None,
        message_id: Optional[str] = None,
        receive_count: Optional[int] = None,
    ):
        self.new_context = {
            "queue_name": queue_name,
            "partition_key": partition_key,
            "message_id": message_id,
            "receive_count": receive_count,
        }
        self.old_context: Dict[str, Any] = {}

    def __enter__(self) -> "MessageLogContext":
        # Save current context
        self.old_context = {
            "queue_name": _queue_name.get(),
            "partition_key": _partition_key.get(),
            "message_id": _message_id.get(),
            "receive_count": _receive_count.get(),
        }

        for key, value in self.new_context.items():
            if value is not None:
                set_message_context(**{key: value})

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        # Restore old context
        set_message_context(**self.old_context)
        return False
