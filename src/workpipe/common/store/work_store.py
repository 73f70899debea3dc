"""
Work store: orders, items and idempotency records.

The pipeline needs a small key-value contract from its store:
- one transactional multi-row write (an order and all of its items), each row
  put only if absent
- single-row conditional updates keyed by (order_id, item_id)
- lookups by key and by the secondary indexes (item status, user id)
- conditional put / get / update / delete of idempotency records, with
  expired rows garbage collected by ``purge_expired``

``InMemoryWorkStore`` implements it in process. Records are copied on the way
in and out, so callers never hold references to stored state.
"""

import asyncio
import logging
from typing import Protocol, runtime_checkable

from config.config import TableSettings
from core.errors.exceptions import ConditionalCheckFailedError
from workpipe.schemas.orders import (
    IdempotencyRecord,
    ItemRecord,
    ItemStatus,
    OrderRecord,
)
from workpipe.common.types import Clock, system_clock

logger = logging.getLogger(__name__)


@runtime_checkable
class WorkStore(Protocol):
    """Capability interface the pipeline components depend on."""

    async def transact_write_order(
        self, order: OrderRecord, items: list[ItemRecord]
    ) -> list[ItemRecord]: ...

    async def get_order(self, order_id: str) -> OrderRecord | None: ...

    async def get_item(self, order_id: str, item_id: str) -> ItemRecord | None: ...

    async def list_items(self, order_id: str) -> list[ItemRecord]: ...

    async def query_items_by_status(self, status: ItemStatus) -> list[ItemRecord]: ...

    async def query_orders_by_user(self, user_id: str) -> list[OrderRecord]: ...

    async def list_orders(self) -> list[OrderRecord]: ...

    async def update_item_status(
        self,
        order_id: str,
        item_id: str,
        status: ItemStatus,
        timestamp: str,
        expected_status: ItemStatus = ItemStatus.PENDING,
    ) -> ItemRecord: ...

    async def update_order_status(self, order_id: str, order_status: str) -> OrderRecord: ...

    async def put_idempotency_record_if_absent(self, record: IdempotencyRecord) -> None: ...

    async def get_idempotency_record(self, fingerprint: str) -> IdempotencyRecord | None: ...

    async def update_idempotency_record(self, record: IdempotencyRecord) -> None: ...

    async def delete_idempotency_record(self, fingerprint: str) -> None: ...

    async def purge_expired(self, now: float | None = None) -> int: ...


class InMemoryWorkStore:
    """Process-local work store.

    Mutations run under one asyncio lock; each public method is atomic with
    respect to the others. ``_commit`` is the hook a durable subclass uses to
    persist after every mutation.
    """

    def __init__(self, tables: TableSettings | None = None, clock: Clock = system_clock):
        self.tables = tables or TableSettings()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._orders: dict[str, OrderRecord] = {}
        self._items: dict[tuple[str, str], ItemRecord] = {}
        self._idempotency: dict[str, IdempotencyRecord] = {}

    async def _commit(self) -> None:
        """Persist after a mutation. No-op in memory."""

    # ------------------------------------------------------------------
    # Orders and items
    # ------------------------------------------------------------------

    async def transact_write_order(
        self, order: OrderRecord, items: list[ItemRecord]
    ) -> list[ItemRecord]:
        """Write an order and its items in one all-or-nothing step.

        Every row is put only if its key does not exist yet. Rows already
        stored, including items that reached a terminal status, are kept as
        they are.

        Returns:
            The stored item rows, in the order given

        Raises:
            ValueError: An item belongs to a different order, or item ids repeat
        """
        item_keys = [item.key for item in items]
        if any(key[0] != order.order_id for key in item_keys):
            raise ValueError(f"All items must belong to order {order.order_id}")
        if len(set(item_keys)) != len(item_keys):
            raise ValueError(f"Duplicate item ids in order {order.order_id}")

        async with self._lock:
            order_created = order.order_id not in self._orders
            if order_created:
                self._orders[order.order_id] = order.model_copy(deep=True)
            created = 0
            for item in items:
                if item.key not in self._items:
                    self._items[item.key] = item.model_copy(deep=True)
                    created += 1
            if order_created or created:
                await self._commit()
            stored = [self._items[key].model_copy(deep=True) for key in item_keys]

        logger.debug(
            "Wrote order and items",
            extra={
                "table": f"{self.tables.orders}+{self.tables.items}",
                "operation": "transact_write",
                "order_id": order.order_id,
                "total_items": len(items),
                "order_created": order_created,
                "items_created": created,
            },
        )
        return stored

    async def get_order(self, order_id: str) -> OrderRecord | None:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def get_item(self, order_id: str, item_id: str) -> ItemRecord | None:
        item = self._items.get((order_id, item_id))
        return item.model_copy(deep=True) if item else None

    async def list_items(self, order_id: str) -> list[ItemRecord]:
        return [
            item.model_copy(deep=True)
            for (item_order_id, _), item in self._items.items()
            if item_order_id == order_id
        ]

    async def query_items_by_status(self, status: ItemStatus) -> list[ItemRecord]:
        """Secondary index on item status."""
        return [
            item.model_copy(deep=True)
            for item in self._items.values()
            if item.item_status == status
        ]

    async def query_orders_by_user(self, user_id: str) -> list[OrderRecord]:
        """Secondary index on user id."""
        return [
            order.model_copy(deep=True)
            for order in self._orders.values()
            if order.user_id == user_id
        ]

    async def list_orders(self) -> list[OrderRecord]:
        return [order.model_copy(deep=True) for order in self._orders.values()]

    async def update_item_status(
        self,
        order_id: str,
        item_id: str,
        status: ItemStatus,
        timestamp: str,
        expected_status: ItemStatus = ItemStatus.PENDING,
    ) -> ItemRecord:
        """Conditionally move an item to ``status``.

        Sets ``processed_at`` for PROCESSED and ``failed_at`` for FAILED.

        Raises:
            ConditionalCheckFailedError: The item is missing or its status is
                not ``expected_status``; ``current`` holds the row as found
        """
        async with self._lock:
            item = self._items.get((order_id, item_id))
            if item is None or item.item_status != expected_status:
                raise ConditionalCheckFailedError(
                    f"Item {item_id} is not {expected_status.value}",
                    current=item.model_copy(deep=True) if item else None,
                    context={
                        "table": self.tables.items,
                        "order_id": order_id,
                        "item_id": item_id,
                        "item_status": item.item_status.value if item else None,
                    },
                )

            changes: dict = {"item_status": status}
            if status == ItemStatus.PROCESSED:
                changes["processed_at"] = timestamp
            elif status == ItemStatus.FAILED:
                changes["failed_at"] = timestamp

            updated = item.model_copy(update=changes)
            self._items[(order_id, item_id)] = updated
            await self._commit()

        logger.debug(
            "Updated item status",
            extra={
                "table": self.tables.items,
                "operation": "update",
                "order_id": order_id,
                "item_id": item_id,
                "previous_status": expected_status.value,
                "item_status": status.value,
            },
        )
        return updated.model_copy(deep=True)

    async def update_order_status(self, order_id: str, order_status: str) -> OrderRecord:
        """Set the order's status field.

        Raises:
            ConditionalCheckFailedError: The order does not exist
        """
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise ConditionalCheckFailedError(
                    f"Order {order_id} does not exist",
                    context={"table": self.tables.orders, "order_id": order_id},
                )
            updated = order.model_copy(update={"order_status": order_status})
            self._orders[order_id] = updated
            await self._commit()
        return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Idempotency records
    # ------------------------------------------------------------------

    async def put_idempotency_record_if_absent(self, record: IdempotencyRecord) -> None:
        """Create a record unless a live one exists for the fingerprint.

        Expired rows, and in-progress rows past their in-progress expiration,
        count as absent and are replaced.

        Raises:
            ConditionalCheckFailedError: A live record exists; ``current`` holds it
        """
        now = self._clock()
        async with self._lock:
            existing = self._idempotency.get(record.fingerprint)
            if existing is not None and not existing.is_expired(now):
                raise ConditionalCheckFailedError(
                    f"Idempotency record {record.fingerprint} already exists",
                    current=existing.model_copy(deep=True),
                    context={"table": self.tables.idempotency, "fingerprint": record.fingerprint},
                )
            self._idempotency[record.fingerprint] = record.model_copy(deep=True)
            await self._commit()

    async def get_idempotency_record(self, fingerprint: str) -> IdempotencyRecord | None:
        record = self._idempotency.get(fingerprint)
        return record.model_copy(deep=True) if record else None

    async def update_idempotency_record(self, record: IdempotencyRecord) -> None:
        async with self._lock:
            self._idempotency[record.fingerprint] = record.model_copy(deep=True)
            await self._commit()

    async def delete_idempotency_record(self, fingerprint: str) -> None:
        async with self._lock:
            if self._idempotency.pop(fingerprint, None) is not None:
                await self._commit()

    async def purge_expired(self, now: float | None = None) -> int:
        """Garbage collect idempotency rows past their TTL. Returns rows removed."""
        now = self._clock() if now is None else now
        async with self._lock:
            expired = [
                fingerprint
                for fingerprint, record in self._idempotency.items()
                if record.expiration <= now
            ]
            for fingerprint in expired:
                del self._idempotency[fingerprint]
            if expired:
                await self._commit()

        if expired:
            logger.info(
                f"Purged {len(expired)} expired idempotency records",
                extra={"table": self.tables.idempotency, "operation": "purge"},
            )
        return len(expired)
