"""
Order-level status derived from item statuses.

Off by default. With ``aggregate_order_status: true`` the runner passes
``OrderStatusProjector.project`` as the transition listener of the item
processor and the dead-letter handler, so the order row follows its items:

    no items, or any item PENDING   -> PENDING
    every item PROCESSED            -> PROCESSED
    every item FAILED               -> FAILED
    PROCESSED and FAILED mixed      -> PARTIALLY_PROCESSED
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable

from core.logging import log_exception
from workpipe.common.store.work_store import WorkStore
from workpipe.schemas.orders import ItemRecord, ItemStatus, OrderStatus

logger = logging.getLogger(__name__)


def aggregate_order_status(items: Iterable[ItemRecord | ItemStatus]) -> OrderStatus:
    statuses = {item.item_status if isinstance(item, ItemRecord) else item for item in items}

    if not statuses or ItemStatus.PENDING in statuses:
        return OrderStatus.PENDING
    if statuses == {ItemStatus.PROCESSED}:
        return OrderStatus.PROCESSED
    if statuses == {ItemStatus.FAILED}:
        return OrderStatus.FAILED
    return OrderStatus.PARTIALLY_PROCESSED


class OrderStatusProjector:
    """Recomputes and stores an order's status after an item transition.

    Best effort: failures are logged, never raised, because the item
    transition that triggered the projection has already been committed.
    """

    def __init__(self, store: WorkStore):
        self.store = store
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: defaultdict[str, int] = defaultdict(int)

    async def project(self, item: ItemRecord) -> OrderStatus | None:
        order_id = item.order_id
        # Serialize read-compute-write per order so a stale read cannot win
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        self._lock_users[order_id] += 1
        try:
            async with lock:
                return await self._project(item)
        finally:
            self._lock_users[order_id] -= 1
            if not self._lock_users[order_id]:
                del self._lock_users[order_id]
                del self._locks[order_id]

    async def _project(self, item: ItemRecord) -> OrderStatus | None:
        order_id = item.order_id
        try:
            order = await self.store.get_order(order_id)
            if order is None:
                logger.warning(
                    f"Order {order_id} not found; skipping status aggregation",
                    extra={"order_id": order_id, "item_id": item.item_id},
                )
                return None

            status = aggregate_order_status(await self.store.list_items(order_id))
            if order.order_status != status.value:
                await self.store.update_order_status(order_id, status.value)
                logger.info(
                    f"Order {order_id} status {order.order_status} -> {status.value}",
                    extra={"order_id": order_id, "order_status": status.value},
                )
            return status
        except Exception as e:
            log_exception(
                logger,
                e,
                "Failed to aggregate order status",
                level=logging.WARNING,
                order_id=order_id,
                item_id=item.item_id,
            )
            return None
