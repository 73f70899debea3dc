"""
Unified exception hierarchy for the work-item pipeline.

Provides typed exceptions with retry classification so ingestion, the item
processor and the dead-letter handler can decide how to react to a failure.
"""


# Import ErrorCategory from canonical source to avoid duplicate enum issues
# (comparing enums from different classes always returns False)
from core.types import ErrorCategory


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.category in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.CONFLICT,
            ErrorCategory.UNKNOWN,
        )

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Transient Errors (caller or queue may retry)
# =============================================================================


class TransientError(PipelineError):
    """Base class for transient/retriable errors."""

    category = ErrorCategory.TRANSIENT


class PersistenceError(TransientError):
    """Work store read or write failed."""

    pass


class EnqueueError(TransientError):
    """Sending a message to a queue failed.

    Attributes:
        enqueued: Number of messages that were sent before the failure
    """

    def __init__(
        self,
        message: str,
        enqueued: int = 0,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, cause, context)
        self.enqueued = enqueued


class ProcessingFailure(TransientError):
    """Unit of work failed; the message is left for redelivery."""

    pass


class InProgressError(PipelineError):
    """A request with the same idempotency fingerprint is still in flight."""

    category = ErrorCategory.CONFLICT

    def __init__(self, fingerprint: str, cause: Exception | None = None):
        super().__init__(
            f"Request '{fingerprint}' is already in progress",
            cause,
            {"fingerprint": fingerprint},
        )
        self.fingerprint = fingerprint


# =============================================================================
# Permanent Errors (Don't Retry)
# =============================================================================


class PermanentError(PipelineError):
    """Base class for permanent/non-retriable errors."""

    category = ErrorCategory.PERMANENT


class ConditionalCheckFailedError(PermanentError):
    """A conditional write found the row in an unexpected state."""

    def __init__(
        self,
        message: str,
        current: object | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, cause, context)
        self.current = current  # Row as found by the store, if any


class TerminalFailure(PermanentError):
    """Redelivery budget exhausted; the message was routed to the DLQ."""

    def __init__(
        self,
        message: str,
        receive_count: int,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, cause, context)
        self.receive_count = receive_count


class ConfigurationError(PermanentError):
    """Invalid or missing configuration."""

    pass


# =============================================================================
# Error Classification Utilities
# =============================================================================

# Markers for string-based detection (fallback for non-PipelineError exceptions)
TRANSIENT_ERROR_MARKERS = frozenset(
    {
        "timeout",
        "timed out",
        "connection",
        "temporarily unavailable",
        "service unavailable",
        "throttl",
        "rate limit",
        "503",
        "502",
        "504",
        "429",
    }
)

PERMANENT_ERROR_MARKERS = frozenset(
    {
        "conditional check failed",
        "validation",
        "invalid",
        "not found",
        "forbidden",
        "403",
        "404",
    }
)


def is_retryable_error(exc: Exception) -> bool:
    """
    Check if exception should be retried.

    Retryable errors include:
    - Transient errors (store/queue hiccups, failed unit of work)
    - Conflicts (an identical request is still in flight)
    - Unknown errors (conservative retry)

    Non-retryable:
    - Permanent errors (failed conditions, validation, configuration)
    """
    if isinstance(exc, PipelineError):
        return exc.is_retryable

    category = classify_exception(exc)
    return category in (
        ErrorCategory.TRANSIENT,
        ErrorCategory.CONFLICT,
        ErrorCategory.UNKNOWN,
    )


def classify_exception(exc: Exception) -> ErrorCategory:
    """Classify an exception into error category."""
    # Already classified
    if isinstance(exc, PipelineError):
        return exc.category

    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    if any(m in exc_type or m in exc_str for m in TRANSIENT_ERROR_MARKERS):
        return ErrorCategory.TRANSIENT

    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return ErrorCategory.PERMANENT

    if any(m in exc_type or m in exc_str for m in PERMANENT_ERROR_MARKERS):
        return ErrorCategory.PERMANENT

    return ErrorCategory.UNKNOWN


def wrap_exception(
    exc: Exception,
    default_class: type = PipelineError,
    context: dict | None = None,
) -> PipelineError:
    """Wrap a generic exception in appropriate PipelineError subclass."""
    if isinstance(exc, PipelineError):
        if context:
            exc.context.update(context)
        return exc

    category = classify_exception(exc)
    context = context or {}
    context.setdefault("error_type", type(exc).__name__)

    # An explicit, more specific default wins over the generic category bases
    if default_class is not PipelineError:
        return default_class(str(exc), cause=exc, context=context)

    if category == ErrorCategory.TRANSIENT:
        return TransientError(str(exc), cause=exc, context=context)

    if category == ErrorCategory.PERMANENT:
        return PermanentError(str(exc), cause=exc, context=context)

    return PipelineError(str(exc), cause=exc, context=context)
