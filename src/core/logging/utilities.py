"""Logging utility functions."""

import logging
from typing import Any

# Reserved LogRecord attribute names that cannot be used in extra dict
_RESERVED_LOG_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "asctime",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)


def log_with_context(
    logger: logging.Logger,
    level: int,
    msg: str,
    **kwargs: Any,
) -> None:
    """
    Log with structured context fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Additional context fields (order_id, item_id, duration_ms, etc.)
                  Note: exc_info=True is supported and handled specially.

    Example:
        log_with_context(
            logger, logging.INFO, "Item processed",
            order_id=item.order_id,
            item_id=item.item_id,
            duration_ms=elapsed,
        )
    """
    exc_info = kwargs.pop("exc_info", None)

    # Filter out reserved keys to prevent LogRecord conflicts
    extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_LOG_KEYS}

    logger.log(level, msg, exc_info=exc_info, extra=extra)


def log_exception(
    logger: logging.Logger,
    exc: Exception,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **kwargs: Any,
) -> None:
    """
    Log exception with context and optional traceback.

    Automatically extracts error_category from PipelineError subclasses.

    Args:
        logger: Logger instance
        exc: Exception to log
        msg: Context message
        level: Log level (default: ERROR)
        include_traceback: Include full traceback (default: True)
        **kwargs: Additional context fields

    Example:
        try:
            await store.update_item_status(...)
        except PersistenceError as e:
            log_exception(logger, e, "Failed to mark item", item_id=item.item_id)
    """
    error_category = kwargs.get("error_category")
    if error_category is None and hasattr(exc, "category"):
        cat = exc.category
        error_category = cat.value if hasattr(cat, "value") else str(cat)
        kwargs["error_category"] = error_category

    error_msg = str(exc)
    if len(error_msg) > 500:
        error_msg = error_msg[:500] + "..."
    kwargs["error_message"] = error_msg
    kwargs.setdefault("error_type", type(exc).__name__)

    extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_LOG_KEYS}
    if include_traceback:
        logger.log(level, msg, exc_info=exc, extra=extra)
    else:
        logger.log(level, msg, extra=extra)


def format_cycle_output(
    cycle_count: int,
    succeeded: int,
    failed: int,
    skipped: int = 0,
    since_last: dict[str, int] | None = None,
    interval_seconds: int = 30,
) -> str:
    """
    Format standardized cycle output for workers with delta tracking.

    Args:
        cycle_count: Current cycle number
        succeeded: Total count of successfully handled messages
        failed: Total count of failed deliveries
        skipped: Total count of messages acknowledged without work (duplicates)
        since_last: Optional delta counts since last cycle (keys: succeeded, failed, skipped)
        interval_seconds: Cycle interval in seconds (default: 30)

    Returns:
        Formatted cycle output string

    Example:
        >>> format_cycle_output(1, 1200, 34, 50)
        'Cycle 1: processed=1284, succeeded=1200, failed=34, skipped=50'
        >>> format_cycle_output(5, 1200, 34, 0, {"succeeded": 240, "failed": 0, "skipped": 0}, 30)
        'Cycle 5: +240 this cycle | total: 1200 succeeded, 34 failed | 8.0 msg/s'
    """
    total_processed = succeeded + failed + skipped

    if since_last is not None:
        delta_total = (
            since_last.get("succeeded", 0)
            + since_last.get("failed", 0)
            + since_last.get("skipped", 0)
        )
        rate = delta_total / interval_seconds if interval_seconds > 0 else 0

        total_parts = [f"{succeeded} succeeded"]
        if failed > 0:
            total_parts.append(f"{failed} failed")
        if skipped > 0:
            total_parts.append(f"{skipped} skipped")

        parts = [
            f"+{delta_total} this cycle",
            f"total: {', '.join(total_parts)}",
            f"{rate:.1f} msg/s",
        ]
        return f"Cycle {cycle_count}: {' | '.join(parts)}"

    parts = [f"processed={total_processed}", f"succeeded={succeeded}", f"failed={failed}"]
    if skipped > 0:
        parts.append(f"skipped={skipped}")

    return f"Cycle {cycle_count}: {', '.join(parts)}"


_BANNER_FIELDS: list[tuple[str, str]] = [
    ("instance_id", "Instance:     {}"),
    ("domain", "Domain:       {}"),
    ("work_queue", "Work Queue:   {}"),
    ("dead_letter_queue", "DLQ:          {}"),
    ("store", "Work Store:   {}"),
    ("health_port", "Health:       http://localhost:{}"),
    ("metrics_port", "Metrics:      http://localhost:{}"),
]


def log_startup_banner(
    logger: logging.Logger,
    worker_name: str,
    **kwargs: Any,
) -> None:
    """
    Log startup banner with pipeline configuration.

    Args:
        logger: Logger instance
        worker_name: Display name (e.g., "Order Pipeline")
        **kwargs: Optional fields: instance_id, domain, work_queue,
            dead_letter_queue, store, health_port, metrics_port, version
    """
    separator = "=" * 50

    lines = ["", separator, worker_name]

    version = kwargs.get("version")
    if version:
        lines.append(f"Version: {version}")

    lines.append(separator)

    for field_name, fmt in _BANNER_FIELDS:
        value = kwargs.get(field_name)
        if value:
            lines.append(fmt.format(value))

    lines.append(separator)
    lines.append("")

    logger.info("\n".join(lines))
