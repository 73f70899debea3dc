"""Self-hosted ordered queue and its consumer pool."""

from workpipe.common.queue.consumer import MessageHandler, QueueConsumer
from workpipe.common.queue.ordered_queue import OrderedWorkQueue, RedrivePolicy

__all__ = [
    "OrderedWorkQueue",
    "RedrivePolicy",
    "QueueConsumer",
    "MessageHandler",
]
