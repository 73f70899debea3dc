"""Work store implementations."""

from workpipe.common.store.json_store import JsonFileWorkStore
from workpipe.common.store.work_store import InMemoryWorkStore, WorkStore

__all__ = ["WorkStore", "InMemoryWorkStore", "JsonFileWorkStore"]
