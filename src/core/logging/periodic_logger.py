"""Periodic statistics logging utility for workers."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from core.logging.utilities import format_cycle_output

logger = logging.getLogger(__name__)


class PeriodicStatsLogger:
    """
    Manages periodic statistics logging for workers with delta tracking.

    Tracks changes between cycles and provides delta metrics for rate calculation.
    Workers provide a callback that returns extra fields with cumulative counts.
    """

    def __init__(
        self,
        interval_seconds: int,
        get_stats: Callable[[int], dict[str, Any]],
        stage: str,
        worker_id: str,
    ):
        """
        Args:
            interval_seconds: Logging interval in seconds
            get_stats: Callback that takes cycle_count and returns cumulative
                counts (records_succeeded, records_failed, records_skipped, ...)
            stage: Stage name for logging context
            worker_id: Worker identifier
        """
        self.interval_seconds = interval_seconds
        self.get_stats = get_stats
        self.stage = stage
        self.worker_id = worker_id
        self._task: asyncio.Task | None = None
        self._cycle_count = 0
        self._previous_stats: dict[str, int] = {}

    def start(self) -> None:
        """Start the periodic logging task."""
        if self._task is not None:
            logger.warning("Periodic logger already running")
            return

        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the periodic logging task."""
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    @staticmethod
    def _counts(extra: dict[str, Any]) -> dict[str, int]:
        return {
            "succeeded": extra.get("records_succeeded", 0),
            "failed": extra.get("records_failed", 0),
            "skipped": extra.get("records_skipped", 0),
        }

    def log_cycle(self) -> None:
        """Log one cycle line with deltas since the previous call."""
        self._cycle_count += 1
        extra = self.get_stats(self._cycle_count)
        current = self._counts(extra)
        deltas = {key: current[key] - self._previous_stats.get(key, 0) for key in current}

        msg = format_cycle_output(
            cycle_count=self._cycle_count,
            succeeded=current["succeeded"],
            failed=current["failed"],
            skipped=current["skipped"],
            since_last=deltas,
            interval_seconds=self.interval_seconds,
        )
        self._previous_stats = current

        logger.info(
            msg,
            extra={
                "worker_id": self.worker_id,
                "stage": self.stage,
                "cycle": self._cycle_count,
                **extra,
            },
        )

    async def _run(self) -> None:
        """Run the periodic logging loop with delta tracking."""
        self._previous_stats = self._counts(self.get_stats(0))

        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                self.log_cycle()
        except asyncio.CancelledError:
            logger.debug("Periodic stats logger task cancelled")
            raise
