"""Tests for PeriodicStatsLogger."""

import asyncio
import logging

import pytest

from core.logging.periodic_logger import PeriodicStatsLogger


class TestPeriodicStatsLogger:

    def test_log_cycle_reports_deltas(self, caplog):
        stats = {"records_succeeded": 5, "records_failed": 1, "records_skipped": 0}
        periodic = PeriodicStatsLogger(10, lambda cycle: dict(stats), "pipeline", "w-1")

        with caplog.at_level(logging.INFO, logger="core.logging.periodic_logger"):
            periodic.log_cycle()
            stats["records_succeeded"] = 9
            periodic.log_cycle()

        first, second = caplog.records
        assert first.getMessage().startswith("Cycle 1: +6 this cycle")
        assert second.getMessage().startswith("Cycle 2: +4 this cycle")
        assert second.records_succeeded == 9
        assert second.stage == "pipeline"

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        calls = []

        def get_stats(cycle):
            calls.append(cycle)
            return {}

        periodic = PeriodicStatsLogger(3600, get_stats, "pipeline", "w-1")
        periodic.start()
        await asyncio.sleep(0)
        await periodic.stop()

        assert calls == [0]
        assert periodic._task is None

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self):
        await PeriodicStatsLogger(1, lambda cycle: {}, "pipeline", "w-1").stop()
