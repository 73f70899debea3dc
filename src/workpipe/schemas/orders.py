"""
Order pipeline schemas.

Pydantic models for the ingestion request, the records kept in the work
store, the item message carried on the work queue, and idempotency records.

Field names are snake_case in Python and camelCase on the wire:
    >>> item = ItemMessage.model_validate_json(body)
    >>> item.item_id
    'order-001-item-0'
    >>> item.model_dump(by_alias=True, mode="json")["itemId"]
    'order-001-item-0'
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

WIRE_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ItemStatus(str, Enum):
    """Item lifecycle. PENDING moves to exactly one terminal state."""

    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not ItemStatus.PENDING


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"
    PARTIALLY_PROCESSED = "PARTIALLY_PROCESSED"


class IdempotencyStatus(str, Enum):
    INPROGRESS = "INPROGRESS"
    COMPLETED = "COMPLETED"


def make_item_id(order_id: str, index: int) -> str:
    """Deterministic item identity from the order id and item position."""
    return f"{order_id}-item-{index}"


class OrderItemRequest(BaseModel):
    """One line item as submitted by the caller."""

    model_config = WIRE_CONFIG

    item_detail: str = Field(..., description="Free-text item description")
    quantity: int = Field(..., description="Units ordered")
    price: float = Field(..., description="Unit price")


class OrderRequest(BaseModel):
    """Schema for an order submitted to the ingestion service.

    Attributes:
        order_id: Caller-supplied identity, stable across retries
        user_id: Ordering user
        order_status: Status as supplied by the caller
        order_items: Line items, in order

    Example:
        >>> OrderRequest.model_validate({
        ...     "orderId": "order-001",
        ...     "userId": "user-1",
        ...     "orderStatus": "PENDING",
        ...     "orderItems": [{"itemDetail": "Laptop", "quantity": 1, "price": 999.99}],
        ... })
    """

    model_config = WIRE_CONFIG

    order_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    order_status: str = Field(default=OrderStatus.PENDING.value)
    order_items: List[OrderItemRequest] = Field(default_factory=list)

    @field_validator("order_id", "user_id")
    @classmethod
    def validate_non_empty_strings(cls, v: str, info) -> str:
        """Ensure identity fields are not empty or whitespace-only."""
        if not v or not v.strip():
            raise ValueError(f"{info.field_name} cannot be empty or whitespace")
        return v.strip()

    def wire_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class OrderRecord(BaseModel):
    """Row in the orders table. Written once at ingestion."""

    model_config = WIRE_CONFIG

    order_id: str
    user_id: str
    order_status: str
    timestamp: str = Field(..., description="ISO-8601 UTC creation time")
    total_items: int
    total_value: float


class ItemRecord(BaseModel):
    """Row in the order items table, keyed by (order_id, item_id)."""

    model_config = WIRE_CONFIG

    order_id: str
    item_id: str
    item_detail: str
    quantity: int
    price: float
    item_status: ItemStatus = ItemStatus.PENDING
    timestamp: str
    processed_at: Optional[str] = None
    failed_at: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.order_id, self.item_id)

    @property
    def is_terminal(self) -> bool:
        return self.item_status.is_terminal


class ItemMessage(BaseModel):
    """Body of a work queue message: a copy of the item plus its user.

    The receive count lives on the queue envelope, never here.
    """

    model_config = WIRE_CONFIG

    order_id: str
    user_id: str
    item_id: str
    item_detail: str
    quantity: int
    price: float
    timestamp: str

    @classmethod
    def from_record(cls, item: ItemRecord, user_id: str) -> "ItemMessage":
        return cls(
            order_id=item.order_id,
            user_id=user_id,
            item_id=item.item_id,
            item_detail=item.item_detail,
            quantity=item.quantity,
            price=item.price,
            timestamp=item.timestamp,
        )

    def to_body(self) -> str:
        return self.model_dump_json(by_alias=True)


class IngestionResult(BaseModel):
    """Result of a successful ingestion, stored by the idempotency guard."""

    model_config = WIRE_CONFIG

    message: str = "Orders processed successfully"
    order_id: str
    total_items: int
    total_value: float
    enqueued: int


class IdempotencyRecord(BaseModel):
    """Row in the idempotency table.

    ``expiration`` and ``in_progress_expiration`` are epoch seconds.
    """

    model_config = WIRE_CONFIG

    fingerprint: str
    status: IdempotencyStatus
    expiration: int
    in_progress_expiration: Optional[int] = None
    result: Optional[Dict[str, Any]] = None

    def is_expired(self, now: float) -> bool:
        if self.expiration <= now:
            return True
        return (
            self.status is IdempotencyStatus.INPROGRESS
            and self.in_progress_expiration is not None
            and self.in_progress_expiration <= now
        )
