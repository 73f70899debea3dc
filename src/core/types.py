"""
Core types and protocols used across modules.

This module provides base types, enums, and protocol definitions that are
shared across the core library to ensure consistency and type safety.
"""

from enum import Enum


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    This enum is used throughout the pipeline to classify errors and determine
    whether a message should be left for redelivery or treated as final.

    Categories:
        TRANSIENT: Temporary failures that may succeed on a later delivery
                   (e.g., store unavailable, unit of work failed)
        CONFLICT: Another request or worker holds the resource right now
                  (e.g., an ingestion with the same fingerprint is in flight)
        PERMANENT: Non-retriable failures that won't succeed on retry
                   (e.g., failed conditional write, invalid configuration)
        UNKNOWN: Unclassified errors, may retry conservatively
    """

    TRANSIENT = "transient"
    CONFLICT = "conflict"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


__all__ = [
    "ErrorCategory",
]
