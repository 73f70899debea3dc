"""Log formatters for JSON and console output."""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from core.logging.context import get_log_context
from core.logging.message_context import get_message_context
from core.utils.json_serializers import json_serializer


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with context injection.

    Produces one JSON object per line for easy parsing with jq/grep.
    """

    # Fields to extract from LogRecord extras
    EXTRA_FIELDS = [
        # Correlation and tracing
        "trace_id",
        "duration_ms",
        # Errors
        "error_category",
        "retryable",
        "error_message",
        "error",
        "error_type",
        # Processing metrics
        "records_processed",
        "records_succeeded",
        "records_failed",
        "records_skipped",
        "batch_size",
        "processing_time_ms",
        # Queue
        "queue_name",
        "dead_letter_queue",
        "partition_key",
        "deduplication_id",
        "message_id",
        "sequence_number",
        "receive_count",
        "max_receive_count",
        "visibility_timeout_seconds",
        "queue_depth",
        "in_flight",
        "enqueued",
        # Work store
        "table",
        "operation",
        "order_id",
        "item_id",
        "user_id",
        "item_status",
        "previous_status",
        "order_created",
        "items_created",
        "order_status",
        "total_items",
        "total_value",
        "fingerprint",
        "idempotency_status",
        # Payloads logged for operator review
        "payload",
        # Files and lifecycle
        "file",
        "restored_count",
        "worker_name",
    ]

    # Type mapping for numeric fields so they are not serialized as strings
    NUMERIC_FIELDS = {
        "processing_time_ms": float,
        "duration_ms": float,
        "visibility_timeout_seconds": float,
        "total_value": float,
        "records_processed": int,
        "records_succeeded": int,
        "records_failed": int,
        "records_skipped": int,
        "batch_size": int,
        "sequence_number": int,
        "receive_count": int,
        "max_receive_count": int,
        "queue_depth": int,
        "in_flight": int,
        "enqueued": int,
        "total_items": int,
    }

    def _ensure_type(self, field: str, value: Any) -> Any:
        """
        Ensure field has correct type.

        Args:
            field: Field name
            value: Value to type-check

        Returns:
            Value with correct type, or None if conversion fails
        """
        if field not in self.NUMERIC_FIELDS or value is None:
            return value

        expected_type = self.NUMERIC_FIELDS[field]
        try:
            return expected_type(value)
        except (ValueError, TypeError):
            return None

    @staticmethod
    def _base_log_entry(record: logging.LogRecord) -> dict[str, Any]:
        return {
            "ts": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

    @staticmethod
    def _inject_context(log_entry: dict[str, Any], log_context: dict[str, Any]) -> None:
        context_fields = ["domain", "stage", "cycle_id", "worker_id", "trace_id", "order_id"]
        for field in context_fields:
            if log_context.get(field):
                log_entry[field] = log_context[field]

    @staticmethod
    def _should_include_source_location(record: logging.LogRecord) -> bool:
        return record.levelno in (logging.DEBUG, logging.ERROR, logging.CRITICAL)

    def _inject_extra_fields(self, log_entry: dict[str, Any], record: logging.LogRecord) -> None:
        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = self._ensure_type(field, value)

    def _inject_exception(self, log_entry: dict[str, Any], record: logging.LogRecord) -> None:
        if not record.exc_info:
            return

        exc_type, exc_value, _ = record.exc_info
        log_entry["exception"] = {
            "type": exc_type.__name__ if exc_type else None,
            "message": str(exc_value) if exc_value else None,
            "stacktrace": self.formatException(record.exc_info),
        }

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON with context and typed extra fields."""
        log_entry = self._base_log_entry(record)

        self._inject_context(log_entry, get_log_context())

        # Message context fills in only what the record's extras do not set
        for key, value in get_message_context().items():
            log_entry.setdefault(key, value)

        if self._should_include_source_location(record):
            log_entry["file"] = f"{record.filename}:{record.lineno}"

        self._inject_extra_fields(log_entry, record)
        self._inject_exception(log_entry, record)

        return json.dumps(log_entry, default=json_serializer, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter with color-coded log levels.

    Colors are auto-disabled when output is not a TTY (pipes, files).
    """

    # ANSI color codes
    COLORS = {
        logging.DEBUG: "\033[36m",  # Cyan
        logging.INFO: "\033[32m",  # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._use_colors = sys.stdout.isatty()

    def _format_level_name(self, record: logging.LogRecord) -> str:
        level_name = record.levelname
        if not self._use_colors:
            return level_name

        color = self.COLORS.get(record.levelno, "")
        if not color:
            return level_name

        return f"{color}{level_name}{self.RESET}"

    @staticmethod
    def _build_prefix(level_name: str, log_context: dict[str, Any]) -> str:
        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            level_name,
        ]

        if log_context["domain"]:
            parts.append(f"[{log_context['domain']}]")
        if log_context["stage"]:
            parts.append(f"[{log_context['stage']}]")

        return " - ".join(parts)

    @staticmethod
    def _build_tags(record: logging.LogRecord, log_context: dict[str, Any]) -> list[str]:
        order_id = getattr(record, "order_id", None) or log_context.get("order_id")
        item_id = getattr(record, "item_id", None)
        message_context = get_message_context()
        receive_count = getattr(record, "receive_count", None) or message_context.get(
            "receive_count"
        )

        tags = []
        if order_id:
            tags.append(f"[order:{order_id}]")
        if item_id:
            tags.append(f"[item:{item_id}]")
        if receive_count:
            tags.append(f"[rx:{receive_count}]")
        return tags

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for console output with optional color coding."""
        log_context = get_log_context()

        level_name = self._format_level_name(record)
        prefix = self._build_prefix(level_name, log_context)
        tags = self._build_tags(record, log_context)

        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        if tags:
            return f"{prefix} - {' '.join(tags)} {message}"

        return f"{prefix} - {message}"
