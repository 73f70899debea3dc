"""
Error classification and exception hierarchy.

Provides:
- ErrorCategory enum for classifying errors
- PipelineError hierarchy for typed exceptions
- Classification utilities for error handling
"""

from core.errors.exceptions import (
    ConditionalCheckFailedError,
    ConfigurationError,
    EnqueueError,
    # Enums
    ErrorCategory,
    InProgressError,
    PermanentError,
    PersistenceError,
    # Base classes
    PipelineError,
    ProcessingFailure,
    TerminalFailure,
    TransientError,
    # Classification utilities
    classify_exception,
    is_retryable_error,
    wrap_exception,
)

__all__ = [
    # Enums
    "ErrorCategory",
    # Base classes
    "PipelineError",
    "TransientError",
    "PermanentError",
    # Pipeline errors
    "PersistenceError",
    "EnqueueError",
    "InProgressError",
    "ProcessingFailure",
    "TerminalFailure",
    "ConditionalCheckFailedError",
    "ConfigurationError",
    # Classification utilities
    "is_retryable_error",
    "classify_exception",
    "wrap_exception",
]
