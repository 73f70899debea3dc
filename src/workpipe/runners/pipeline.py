"""Pipeline wiring and execution.

Builds the queues, work store and components from ``WorkPipelineConfig``
once and hands them to each other through constructors. ``WorkPipeline``
owns their lifecycle; ``run_pipeline`` adds the shutdown handling used by
the CLI.
"""

import asyncio
import logging
import random
from collections import Counter
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from config import WorkPipelineConfig
from core.logging import PeriodicStatsLogger, log_exception, set_log_context
from workpipe.aggregation import OrderStatusProjector, aggregate_order_status
from workpipe.common.health import HealthCheckServer
from workpipe.common.idempotency import IdempotencyGuard
from workpipe.common.queue import OrderedWorkQueue, QueueConsumer, RedrivePolicy
from workpipe.common.store import InMemoryWorkStore, JsonFileWorkStore, WorkStore
from workpipe.common.types import Clock, system_clock
from workpipe.dlq import DeadLetterHandler, Notifier
from workpipe.ingestion import OrderIngestionService
from workpipe.processing import ItemProcessor, SimulatedWork, build_fault_injector
from workpipe.processing.item_processor import WorkFunction
from workpipe.schemas import ItemStatus

logger = logging.getLogger(__name__)

DRAIN_POLL_INTERVAL_SECONDS = 0.1


def build_store(config: WorkPipelineConfig, clock: Clock = system_clock) -> WorkStore:
    if config.store.backend == "json":
        return JsonFileWorkStore(Path(config.store.path), tables=config.tables, clock=clock)
    return InMemoryWorkStore(tables=config.tables, clock=clock)


class WorkPipeline:
    """
    The running system: work queue, DLQ, store and both consumer pools.

    Usage:
        >>> pipeline = WorkPipeline(config)
        >>> await pipeline.start()
        >>> await pipeline.ingest_orders(orders)
        >>> await pipeline.wait_until_drained(timeout=120)
        >>> report = await pipeline.report()
        >>> await pipeline.stop()

    ``work``, ``store``, ``notifier`` and ``clock`` can be injected; otherwise
    they are built from configuration.
    """

    def __init__(
        self,
        config: WorkPipelineConfig,
        *,
        store: WorkStore | None = None,
        work: WorkFunction | None = None,
        notifier: Notifier | None = None,
        clock: Clock = system_clock,
        enable_health: bool = False,
        instance_id: str | None = None,
    ):
        self.config = config
        self.instance_id = instance_id
        self._clock = clock
        queues = config.queues

        self.dead_letter_queue = OrderedWorkQueue(
            queues.dead_letter_queue,
            ordered=False,
            visibility_timeout=queues.visibility_timeout_seconds,
            retention_period=queues.dlq_retention_seconds,
            clock=clock,
        )
        self.work_queue = OrderedWorkQueue(
            queues.work_queue,
            ordered=True,
            visibility_timeout=queues.visibility_timeout_seconds,
            deduplication_window=queues.deduplication_window_seconds,
            retention_period=queues.work_retention_seconds,
            redrive_policy=RedrivePolicy(
                dead_letter_queue=self.dead_letter_queue,
                max_receive_count=queues.max_receive_count,
            ),
            clock=clock,
        )

        self.store = store if store is not None else build_store(config, clock)
        self.guard = IdempotencyGuard(
            self.store,
            ttl_seconds=config.idempotency.ttl_seconds,
            in_progress_timeout_seconds=config.idempotency.in_progress_timeout_seconds,
            clock=clock,
        )
        self.ingestion = OrderIngestionService(self.store, self.work_queue, self.guard, clock=clock)

        self.projector = OrderStatusProjector(self.store) if config.aggregate_order_status else None
        on_transition = self.projector.project if self.projector is not None else None

        processor_settings = config.processor
        if work is None:
            rng = random.Random()
            work = SimulatedWork(
                fault_injector=build_fault_injector(
                    processor_settings.fault_injection,
                    fail_first_n=processor_settings.fail_first_n,
                    probability=processor_settings.fault_probability,
                    rng=rng,
                ),
                min_delay=processor_settings.work_min_delay_seconds,
                max_delay=processor_settings.work_max_delay_seconds,
                rng=rng,
            )
        self.processor = ItemProcessor(self.store, work, clock=clock, on_transition=on_transition)
        self.dlq_handler = DeadLetterHandler(
            self.store, notifier=notifier, clock=clock, on_transition=on_transition
        )

        self.health_server = HealthCheckServer(
            port=config.health_port,
            worker_name="workpipe",
            enabled=enable_health,
        )

        self.processor_consumer = QueueConsumer(
            self.work_queue,
            self.processor.handle_message,
            name="item-processor",
            concurrency=processor_settings.concurrency,
            batch_size=processor_settings.batch_size,
            poll_wait_seconds=processor_settings.poll_wait_seconds,
            heartbeat=self.health_server.record_heartbeat,
        )
        dlq_settings = config.dead_letter
        self.dlq_consumer = QueueConsumer(
            self.dead_letter_queue,
            self.dlq_handler.handle_message,
            name="dlq-handler",
            concurrency=dlq_settings.concurrency,
            batch_size=dlq_settings.batch_size,
            poll_wait_seconds=dlq_settings.poll_wait_seconds,
            heartbeat=self.health_server.record_heartbeat,
        )

        self._stats_logger = PeriodicStatsLogger(
            interval_seconds=config.stats_interval_seconds,
            get_stats=self._cycle_stats,
            stage="pipeline",
            worker_id=instance_id or "workpipe",
        )
        self._purge_task: asyncio.Task | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return

        set_log_context(domain=self.config.domain, stage="pipeline")
        await self.health_server.start()
        await self.processor_consumer.start()
        await self.dlq_consumer.start()
        self._stats_logger.start()
        self._purge_task = asyncio.create_task(self._purge_loop())
        self._running = True
        self.health_server.set_ready(queues_ready=True, store_ready=True)

        logger.info(
            "Work pipeline started",
            extra={
                "work_queue": self.work_queue.name,
                "dead_letter_queue": self.dead_letter_queue.name,
                "store": self.config.store.backend,
                "aggregate_order_status": self.config.aggregate_order_status,
            },
        )

    async def stop(self) -> None:
        """Stop consumers, the purge sweep, the stats logger and health server. Safe after a failed start."""
        was_running = self._running
        self._running = False
        self.health_server.set_ready(queues_ready=False)
        await self.processor_consumer.stop()
        await self.dlq_consumer.stop()
        await self._stop_purge()
        await self._stats_logger.stop()
        await self.health_server.stop()
        if was_running:
            self._stats_logger.log_cycle()
            logger.info("Work pipeline stopped", extra=self.get_stats())

    async def _purge_loop(self) -> None:
        """Garbage collect expired idempotency records every purge interval."""
        interval = self.config.idempotency.purge_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.store.purge_expired()
            except Exception as e:
                log_exception(
                    logger,
                    e,
                    "Failed to purge expired idempotency records",
                    level=logging.WARNING,
                    include_traceback=False,
                )

    async def _stop_purge(self) -> None:
        if self._purge_task is None:
            return
        self._purge_task.cancel()
        try:
            await self._purge_task
        except asyncio.CancelledError:
            pass
        self._purge_task = None

    async def ingest_orders(self, orders: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
        """Submit each order to the ingestion service; returns the responses in order."""
        responses = []
        for order in orders:
            response = await self.ingestion.handle(order)
            level = logging.INFO if response["statusCode"] == 200 else logging.WARNING
            logger.log(
                level,
                f"Ingestion response {response['statusCode']}: {response['body']['message']}",
                extra={
                    "order_id": response["body"].get("orderId"),
                    "status_code": response["statusCode"],
                },
            )
            responses.append(response)
        return responses

    def is_drained(self) -> bool:
        return (
            self.work_queue.is_empty()
            and self.dead_letter_queue.is_empty()
            and self.processor_consumer.in_flight == 0
            and self.dlq_consumer.in_flight == 0
        )

    async def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Wait until both queues are empty and nothing is in flight.

        Returns False if ``timeout`` elapsed first.
        """
        try:
            async with asyncio.timeout(timeout):
                while not self.is_drained():
                    await asyncio.sleep(DRAIN_POLL_INTERVAL_SECONDS)
        except TimeoutError:
            logger.warning(
                f"Pipeline not drained after {timeout}s",
                extra={
                    "work_queue_depth": len(self.work_queue),
                    "dlq_depth": len(self.dead_letter_queue),
                },
            )
            return False
        return True

    async def report(self) -> dict[str, Any]:
        return await build_report(self.store)

    def get_stats(self) -> dict[str, Any]:
        processor = self.processor.get_stats()
        dlq = self.dlq_handler.get_stats()
        return {
            "items_processed": processor["records_succeeded"],
            "items_skipped": processor["records_skipped"] + dlq["records_skipped"],
            "processing_failures": processor["records_failed"],
            "items_failed": dlq["records_succeeded"],
            "dlq_errors": dlq["records_failed"],
            "work_queue_depth": len(self.work_queue),
            "dlq_depth": len(self.dead_letter_queue),
        }

    def _cycle_stats(self, cycle: int) -> dict[str, Any]:
        stats = self.get_stats()
        return {
            "records_succeeded": stats["items_processed"] + stats["items_failed"],
            "records_failed": stats["processing_failures"] + stats["dlq_errors"],
            "records_skipped": stats["items_skipped"],
            "work_queue_depth": stats["work_queue_depth"],
            "dlq_depth": stats["dlq_depth"],
        }


async def build_report(store: WorkStore) -> dict[str, Any]:
    """Items grouped by status plus the derived status of every order."""
    items_by_status = {
        status.value: [item.item_id for item in await store.query_items_by_status(status)]
        for status in ItemStatus
    }

    orders = {}
    for order in await store.list_orders():
        items = await store.list_items(order.order_id)
        orders[order.order_id] = {
            "user_id": order.user_id,
            "order_status": order.order_status,
            "derived_status": aggregate_order_status(items).value,
            "items": dict(Counter(item.item_status.value for item in items)),
        }

    return {
        "counts": {status: len(ids) for status, ids in items_by_status.items()},
        "items": items_by_status,
        "orders": orders,
    }


def format_report(report: Mapping[str, Any]) -> str:
    lines = ["Item status:"]
    for status, ids in report["items"].items():
        lines.append(f"  {status:<10} {len(ids):>5}")
        for item_id in ids:
            lines.append(f"    - {item_id}")

    lines.append("Orders:")
    if not report["orders"]:
        lines.append("  (none)")
    for order_id, order in report["orders"].items():
        counts = ", ".join(f"{k}={v}" for k, v in sorted(order["items"].items()))
        lines.append(f"  {order_id:<20} {order['derived_status']:<20} {counts}")
    return "\n".join(lines)


async def run_pipeline(
    config: WorkPipelineConfig,
    shutdown_event: asyncio.Event,
    orders: list[Mapping[str, Any]] | None = None,
    drain: bool = False,
    drain_timeout: float | None = None,
    instance_id: str | None = None,
) -> dict[str, Any]:
    """Run the pipeline until shutdown (or until drained with ``drain``).

    On a startup error the health server stays up in error mode until
    shutdown so the failure is inspectable through ``/health/ready``.
    Returns the final status report.
    """
    pipeline = WorkPipeline(config, enable_health=True, instance_id=instance_id)

    try:
        await pipeline.start()
    except Exception as e:
        log_exception(logger, e, "Failed to start work pipeline")
        if not drain:
            pipeline.health_server.set_error(f"Fatal error: {e}")
            await shutdown_event.wait()
        await pipeline.stop()
        raise

    try:
        if orders:
            await pipeline.ingest_orders(orders)

        if drain:
            drained = asyncio.create_task(pipeline.wait_until_drained(drain_timeout))
            stopped = asyncio.create_task(shutdown_event.wait())
            done, pending = await asyncio.wait(
                {drained, stopped}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        else:
            await shutdown_event.wait()
            logger.info("Shutdown signal received, stopping work pipeline...")
    finally:
        await pipeline.stop()

    return await pipeline.report()
