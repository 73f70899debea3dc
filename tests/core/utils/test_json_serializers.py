"""Tests for JSON serialization helpers."""

import json
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path

from core.utils.json_serializers import canonical_json, json_serializer
from workpipe.schemas import OrderItemRequest


class Color(Enum):
    RED = "red"


class TestJsonSerializer:

    def test_known_types(self):
        assert json_serializer(datetime(2026, 1, 5, 14, 30, tzinfo=UTC)) == "2026-01-05T14:30:00+00:00"
        assert json_serializer(Decimal("999.99")) == 999.99
        assert json_serializer(Path("data/work-store.json")) == "data/work-store.json"
        assert json_serializer(Color.RED) == "red"

    def test_pydantic_model_uses_aliases(self):
        item = OrderItemRequest(item_detail="Laptop", quantity=1, price=999.99)
        assert json_serializer(item) == {"itemDetail": "Laptop", "quantity": 1, "price": 999.99}

    def test_fallback_to_str(self):
        assert json_serializer(object()).startswith("<object object")


class TestCanonicalJson:

    def test_key_order_does_not_matter(self):
        assert canonical_json({"b": 1, "a": {"y": 2, "x": 1}}) == canonical_json(
            {"a": {"x": 1, "y": 2}, "b": 1}
        )

    def test_compact_and_sorted(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'

    def test_unicode_kept(self):
        assert json.loads(canonical_json({"itemDetail": "Café"})) == {"itemDetail": "Café"}
