"""Work store persisted to a single JSON file."""

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from config.config import TableSettings
from core.errors.exceptions import PersistenceError
from workpipe.common.store.work_store import InMemoryWorkStore
from workpipe.common.types import Clock, system_clock
from workpipe.schemas.orders import IdempotencyRecord, ItemRecord, OrderRecord

logger = logging.getLogger(__name__)

FILE_FORMAT_VERSION = 1


class JsonFileWorkStore(InMemoryWorkStore):
    """In-memory store that rewrites a JSON file after every mutation.

    Writes are atomic (temp file, then rename). If a write fails the
    in-memory state is reloaded from the last good file and the caller gets
    a ``PersistenceError``, so memory never runs ahead of disk.
    """

    def __init__(
        self,
        path: Path,
        tables: TableSettings | None = None,
        clock: Clock = system_clock,
    ):
        super().__init__(tables=tables, clock=clock)
        self.path = Path(path)
        restored = self.restore_from_disk()
        logger.info(
            "Opened JSON work store",
            extra={"file": str(self.path), "restored_count": restored},
        )

    async def _commit(self) -> None:
        try:
            self.persist_to_disk()
        except OSError as e:
            self.restore_from_disk()
            raise PersistenceError(
                f"Failed to write work store file {self.path}",
                cause=e,
                context={"file": str(self.path)},
            ) from e

    def persist_to_disk(self) -> None:
        """Write all tables to disk. Raises OSError on failure."""
        data = {
            "version": FILE_FORMAT_VERSION,
            "last_persisted": datetime.now(UTC).isoformat(),
            "tables": {
                self.tables.orders: [
                    o.model_dump(by_alias=True, mode="json") for o in self._orders.values()
                ],
                self.tables.items: [
                    i.model_dump(by_alias=True, mode="json") for i in self._items.values()
                ],
                self.tables.idempotency: [
                    r.model_dump(by_alias=True, mode="json") for r in self._idempotency.values()
                ],
            },
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(data, f, indent=2)
        temp_file.replace(self.path)

    def restore_from_disk(self) -> int:
        """Load tables from disk, replacing memory. Returns records loaded.

        Raises:
            PersistenceError: The file exists but cannot be read or parsed
        """
        self._orders.clear()
        self._items.clear()
        self._idempotency.clear()

        if not self.path.exists():
            logger.debug(
                "No work store file found, starting empty",
                extra={"file": str(self.path)},
            )
            return 0

        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(
                f"Failed to read work store file {self.path}",
                cause=e,
                context={"file": str(self.path)},
            ) from e

        if data.get("version") != FILE_FORMAT_VERSION:
            raise PersistenceError(
                f"Unsupported work store file version: {data.get('version')}",
                context={"file": str(self.path)},
            )

        tables = data.get("tables", {})
        try:
            for row in tables.get(self.tables.orders, []):
                order = OrderRecord.model_validate(row)
                self._orders[order.order_id] = order
            for row in tables.get(self.tables.items, []):
                item = ItemRecord.model_validate(row)
                self._items[item.key] = item
            for row in tables.get(self.tables.idempotency, []):
                record = IdempotencyRecord.model_validate(row)
                self._idempotency[record.fingerprint] = record
        except ValidationError as e:
            raise PersistenceError(
                f"Malformed row in work store file {self.path}",
                cause=e,
                context={"file": str(self.path)},
            ) from e

        return len(self._orders) + len(self._items) + len(self._idempotency)
