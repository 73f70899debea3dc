"""
Core library: reusable, infrastructure-agnostic components.

Modules:
    logging     - Structured JSON logging with context propagation
    errors      - Error classification and exception hierarchy
    utils       - JSON serialization and worker id helpers

Design Principles:
    - No dependencies on a specific queue or store backend
    - All modules are independently testable
"""

from .types import ErrorCategory

__version__ = "0.1.0"

__all__ = [
    "ErrorCategory",
]
