"""
Structured logging module.

Provides JSON logging with context propagation for queue workers.
"""

from core.logging.context import (
    clear_log_context,
    get_log_context,
    set_log_context,
)
from core.logging.formatters import ConsoleFormatter, JSONFormatter
from core.logging.message_context import (
    MessageLogContext,
    clear_message_context,
    get_message_context,
    set_message_context,
)
from core.logging.periodic_logger import PeriodicStatsLogger
from core.logging.setup import (
    get_log_file_path,
    setup_logging,
)
from core.logging.utilities import (
    format_cycle_output,
    log_exception,
    log_startup_banner,
    log_with_context,
)

__all__ = [
    # Setup
    "setup_logging",
    "get_log_file_path",
    # Formatters
    "JSONFormatter",
    "ConsoleFormatter",
    # Context
    "set_log_context",
    "get_log_context",
    "clear_log_context",
    # Message Context
    "set_message_context",
    "get_message_context",
    "clear_message_context",
    "MessageLogContext",
    # Utilities
    "log_with_context",
    "log_exception",
    "log_startup_banner",
    "format_cycle_output",
    "PeriodicStatsLogger",
]
