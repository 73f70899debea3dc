"""Core utility functions."""

from core.utils.json_serializers import canonical_json, json_serializer
from core.utils.worker_id import generate_worker_id

__all__ = ["canonical_json", "json_serializer", "generate_worker_id"]
