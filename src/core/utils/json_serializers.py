"""Shared JSON serialization utilities for type-safe JSON encoding."""

import json
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any


def _serialize_known_type(obj: Any) -> tuple[bool, Any]:
    """Try to serialize by known type. Returns (handled, result)."""
    if isinstance(obj, (datetime, date)):
        return True, obj.isoformat()
    if isinstance(obj, Decimal):
        return True, float(obj)
    if isinstance(obj, Path):
        return True, str(obj)
    if hasattr(obj, "model_dump"):
        return True, obj.model_dump(mode="json", by_alias=True)
    return False, None


def json_serializer(obj: Any) -> Any:
    """
    Type-safe JSON serializer for log records and stored payloads.

    Keeps proper types instead of converting everything to strings:
    - datetime/date → ISO 8601 string
    - Decimal → float
    - Path → string
    - pydantic models → camelCase dict
    - Enums → value
    - Everything else → string (fallback)

    Args:
        obj: Object to serialize

    Returns:
        JSON-serializable representation with proper types
    """
    handled, result = _serialize_known_type(obj)
    if handled:
        return result
    if hasattr(obj, "value"):
        return obj.value
    if hasattr(obj, "__dict__"):
        return obj.__dict__
    return str(obj)


def canonical_json(obj: Any) -> str:
    """Serialize to a stable JSON string (sorted keys, no whitespace).

    Two payloads that are equal as JSON values produce the same string,
    regardless of key order in the source document.
    """
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=json_serializer,
    )


__all__ = ["canonical_json", "json_serializer"]
