"""
Simulated unit of work and pluggable fault injection.

The item processor only knows it awaits ``work(item)``. ``SimulatedWork``
stands in for real business logic: it sleeps for a random interval and then
asks a ``FaultInjector`` whether this attempt should fail.

Injectors:
- ``NoFaults``: never fails
- ``AlwaysFail``: every attempt fails (exercises redrive to the DLQ)
- ``FailFirstN``: the first N attempts per item fail, later ones succeed
- ``SuffixFaultInjector``: item ids ending in "3" always fail, ending in
  "1" fail with a configurable probability
"""

import asyncio
import logging
import random
from collections import Counter
from collections.abc import Awaitable, Callable
from typing import Protocol

from core.errors.exceptions import ConfigurationError, ProcessingFailure
from workpipe.schemas.orders import ItemMessage

logger = logging.getLogger(__name__)


class FaultInjector(Protocol):
    def should_fail(self, item: ItemMessage) -> bool: ...


class NoFaults:
    def should_fail(self, item: ItemMessage) -> bool:
        return False


class AlwaysFail:
    def should_fail(self, item: ItemMessage) -> bool:
        return True


class FailFirstN:
    """Fail the first ``n`` attempts of each item."""

    def __init__(self, n: int = 1):
        if n < 0:
            raise ValueError("n must be >= 0")
        self.n = n
        self._attempts: Counter[str] = Counter()

    def should_fail(self, item: ItemMessage) -> bool:
        self._attempts[item.item_id] += 1
        return self._attempts[item.item_id] <= self.n


class SuffixFaultInjector:
    """Fail by the last character of the item id."""

    def __init__(
        self,
        always_fail_suffix: str = "3",
        flaky_suffix: str = "1",
        probability: float = 0.5,
        rng: random.Random | None = None,
    ):
        self.always_fail_suffix = always_fail_suffix
        self.flaky_suffix = flaky_suffix
        self.probability = probability
        self._rng = rng or random.Random()

    def should_fail(self, item: ItemMessage) -> bool:
        if item.item_id.endswith(self.always_fail_suffix):
            return True
        if item.item_id.endswith(self.flaky_suffix):
            return self._rng.random() < self.probability
        return False


def build_fault_injector(
    mode: str,
    fail_first_n: int = 1,
    probability: float = 0.5,
    rng: random.Random | None = None,
) -> FaultInjector:
    """Injector for a ``processor.fault_injection`` setting."""
    if mode == "none":
        return NoFaults()
    if mode == "always":
        return AlwaysFail()
    if mode == "first_n":
        return FailFirstN(fail_first_n)
    if mode == "suffix":
        return SuffixFaultInjector(probability=probability, rng=rng)
    raise ConfigurationError(f"Unknown fault injection mode: {mode}")


class SimulatedWork:
    """Sleeps ``min_delay..max_delay`` seconds, then maybe fails."""

    def __init__(
        self,
        fault_injector: FaultInjector | None = None,
        min_delay: float = 0.5,
        max_delay: float = 1.5,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if min_delay < 0 or max_delay < min_delay:
            raise ValueError("Require 0 <= min_delay <= max_delay")
        self.fault_injector = fault_injector or NoFaults()
        self.min_delay = min_delay
        self.max_delay = max_delay
        self._rng = rng or random.Random()
        self._sleep = sleep

    async def __call__(self, item: ItemMessage) -> None:
        logger.info(
            f"Processing item {item.item_id} ({item.item_detail})",
            extra={"order_id": item.order_id, "item_id": item.item_id},
        )

        await self._sleep(self._rng.uniform(self.min_delay, self.max_delay))

        if self.fault_injector.should_fail(item):
            raise ProcessingFailure(
                f"Simulated processing failure for item {item.item_id}",
                context={"order_id": item.order_id, "item_id": item.item_id},
            )
