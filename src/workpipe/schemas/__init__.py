"""Pydantic schemas for orders, items and queue messages."""

from workpipe.schemas.orders import (
    IdempotencyRecord,
    IdempotencyStatus,
    IngestionResult,
    ItemMessage,
    ItemRecord,
    ItemStatus,
    OrderItemRequest,
    OrderRecord,
    OrderRequest,
    OrderStatus,
    make_item_id,
)

__all__ = [
    "ItemStatus",
    "OrderStatus",
    "IdempotencyStatus",
    "OrderItemRequest",
    "OrderRequest",
    "OrderRecord",
    "ItemRecord",
    "ItemMessage",
    "IngestionResult",
    "IdempotencyRecord",
    "make_item_id",
]
