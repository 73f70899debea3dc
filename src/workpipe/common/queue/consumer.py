"""
Queue consumer worker pool.

Provides async queue consumption with:
- A pool of worker tasks, each long-polling the queue
- Acknowledgement (delete) only after the handler returns
- Error classification and logging; failed messages are never acknowledged,
  so the queue redelivers them after the visibility timeout
- Visibility extended while a handler runs, so a slow handler never sees
  its message redelivered to another worker
- Per-message log context (queue, partition, message id, receive count)
- Graceful shutdown handling
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from core.errors.exceptions import classify_exception, is_retryable_error
from core.logging import MessageLogContext, log_exception, log_with_context, set_log_context
from core.types import ErrorCategory
from core.utils import generate_worker_id
from workpipe.common import metrics
from workpipe.common.queue.ordered_queue import OrderedWorkQueue
from workpipe.common.types import ReceivedMessage

logger = logging.getLogger(__name__)

MessageHandler = Callable[[ReceivedMessage], Awaitable[None]]

# Back-off after an unexpected error in the poll loop itself
POLL_ERROR_BACKOFF_SECONDS = 1.0
IDLE_SLEEP_SECONDS = 0.05
# Visibility is extended after this fraction of the timeout has elapsed
VISIBILITY_EXTEND_FRACTION = 0.5


class QueueConsumer:
    """
    Pool of workers pulling from one queue and invoking a message handler.

    Usage:
        >>> consumer = QueueConsumer(
        ...     queue=work_queue,
        ...     handler=processor.handle_message,
        ...     name="item-processor",
        ...     concurrency=4,
        ... )
        >>> await consumer.start()
        >>> # Workers run until stopped
        >>> await consumer.stop()

    The handler signals failure by raising. Any exception leaves the message
    unacknowledged; the consumer never re-raises, so one bad message does not
    stop the worker.
    """

    def __init__(
        self,
        queue: OrderedWorkQueue,
        handler: MessageHandler,
        name: str,
        concurrency: int = 1,
        batch_size: int = 1,
        poll_wait_seconds: float = 1.0,
        heartbeat: Callable[[], None] | None = None,
        extend_visibility: bool = True,
    ):
        """
        Args:
            queue: Queue to consume from
            handler: Async callable invoked once per delivered message
            name: Consumer name, used for worker ids and log context
            concurrency: Number of worker tasks
            batch_size: Messages per receive; a batch is handled concurrently
            poll_wait_seconds: Long-poll wait per receive
            heartbeat: Called on every poll (health liveness)
            extend_visibility: Keep a delivery invisible while its handler runs
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        self.queue = queue
        self.handler = handler
        self.name = name
        self.concurrency = concurrency
        self.batch_size = batch_size
        self.poll_wait_seconds = poll_wait_seconds
        self._heartbeat = heartbeat
        self.extend_visibility = extend_visibility
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._in_flight = 0

        self._records_succeeded = 0
        self._records_failed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        """Messages currently inside the handler."""
        return self._in_flight

    def get_stats(self) -> dict[str, Any]:
        return {
            "records_succeeded": self._records_succeeded,
            "records_failed": self._records_failed,
            "in_flight": self._in_flight,
        }

    async def start(self) -> None:
        """Spawn the worker tasks. Safe to call twice."""
        if self._running:
            logger.debug("Consumer already running", extra={"consumer": self.name})
            return

        self._running = True
        for index in range(self.concurrency):
            worker_id = generate_worker_id(self.name, index)
            task = asyncio.create_task(self._worker_loop(worker_id), name=worker_id)
            self._tasks.append(task)

        log_with_context(
            logger,
            logging.INFO,
            f"Started consumer {self.name}",
            queue_name=self.queue.name,
            concurrency=self.concurrency,
            batch_size=self.batch_size,
        )

    async def stop(self) -> None:
        """Cancel the workers and wait for them. Safe to call multiple times."""
        if not self._running and not self._tasks:
            return

        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        log_with_context(
            logger,
            logging.INFO,
            f"Stopped consumer {self.name}",
            queue_name=self.queue.name,
            records_succeeded=self._records_succeeded,
            records_failed=self._records_failed,
        )

    async def run_once(self, wait_seconds: float = 0.0) -> int:
        """Receive and handle a single batch. Returns the batch size.

        Used for draining and for step-by-step tests.
        """
        messages = await self.queue.receive(max_messages=self.batch_size, wait_seconds=wait_seconds)
        if messages:
            await self._process_batch(messages)
        return len(messages)

    async def _worker_loop(self, worker_id: str) -> None:
        set_log_context(worker_id=worker_id, stage=self.name)
        logger.debug("Worker started", extra={"worker_id": worker_id})

        while self._running:
            try:
                if self._heartbeat is not None:
                    self._heartbeat()

                handled = await self.run_once(wait_seconds=self.poll_wait_seconds)
                if not handled and self.poll_wait_seconds <= 0:
                    await asyncio.sleep(IDLE_SLEEP_SECONDS)

            except asyncio.CancelledError:
                logger.debug("Worker cancelled", extra={"worker_id": worker_id})
                raise
            except Exception as e:
                log_exception(logger, e, "Error in consumer poll loop", worker_id=worker_id)
                await asyncio.sleep(POLL_ERROR_BACKOFF_SECONDS)

    async def _process_batch(self, messages: list[ReceivedMessage]) -> None:
        # Ordered queues never put two messages of one partition in a batch
        await asyncio.gather(*(self._process_message(m) for m in messages))

    async def _process_message(self, message: ReceivedMessage) -> bool:
        """Run the handler for one delivery; acknowledge on success."""
        with MessageLogContext(
            queue_name=message.queue_name,
            partition_key=message.partition_key,
            message_id=message.message_id,
            receive_count=message.receive_count,
        ):
            log_with_context(
                logger,
                logging.DEBUG,
                "Processing message",
                sequence_number=message.sequence_number,
            )

            self._in_flight += 1
            keepalive = self._keep_invisible(message)
            start_time = time.perf_counter()
            try:
                await self.handler(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                duration = time.perf_counter() - start_time
                metrics.message_processing_duration_seconds.labels(queue=self.queue.name).observe(
                    duration
                )
                self._records_failed += 1
                self._handle_processing_error(message, e, duration)
                return False
            finally:
                self._in_flight -= 1
                if keepalive is not None:
                    keepalive.cancel()

            duration = time.perf_counter() - start_time
            metrics.message_processing_duration_seconds.labels(queue=self.queue.name).observe(
                duration
            )

            # At-least-once: acknowledge only after the handler succeeded
            await self.queue.delete(message.receipt_handle)
            self._records_succeeded += 1

            log_with_context(
                logger,
                logging.DEBUG,
                "Message processed successfully",
                duration_ms=round(duration * 1000, 2),
            )
            return True

    def _keep_invisible(self, message: ReceivedMessage) -> asyncio.Task | None:
        """Extend the delivery's visibility until the handler returns.

        Stops the partition head from being redelivered to another worker
        while a slow handler is still running.
        """
        if not self.extend_visibility:
            return None
        return asyncio.create_task(self._extend_visibility(message.receipt_handle))

    async def _extend_visibility(self, receipt_handle: str) -> None:
        timeout = self.queue.visibility_timeout
        while True:
            await asyncio.sleep(timeout * VISIBILITY_EXTEND_FRACTION)
            if not await self.queue.change_visibility(receipt_handle, timeout):
                return
            logger.debug(
                "Extended message visibility",
                extra={"queue_name": self.queue.name, "visibility_timeout_seconds": timeout},
            )

    def _handle_processing_error(
        self, message: ReceivedMessage, error: Exception, duration: float
    ) -> None:
        """
        Log a handler failure by category. The message is never acknowledged:

        - TRANSIENT: redelivered after the visibility timeout
        - CONFLICT: redelivered; another request holds the same work
        - PERMANENT: redelivered until the redrive policy moves it
        - UNKNOWN: conservative retry
        """
        error_category = classify_exception(error)
        metrics.record_processing_error(self.queue.name, error_category.value)

        common_context = {
            "error_category": error_category.value,
            "retryable": is_retryable_error(error),
            "duration_ms": round(duration * 1000, 2),
        }

        if error_category == ErrorCategory.TRANSIENT:
            log_exception(
                logger,
                error,
                "Transient error - message will be redelivered after visibility timeout",
                level=logging.WARNING,
                include_traceback=False,
                **common_context,
            )
        elif error_category == ErrorCategory.CONFLICT:
            log_exception(
                logger,
                error,
                "Conflicting request in flight - message will be redelivered",
                level=logging.WARNING,
                include_traceback=False,
                **common_context,
            )
        elif error_category == ErrorCategory.PERMANENT:
            log_exception(
                logger,
                error,
                "Permanent error - message left for redrive to dead-letter queue",
                **common_context,
            )
        else:
            log_exception(
                logger,
                error,
                "Unknown error category - applying conservative retry",
                **common_context,
            )
