"""Dead-letter handling."""

from workpipe.dlq.handler import DeadLetterHandler, LoggingNotifier, Notifier

__all__ = ["DeadLetterHandler", "Notifier", "LoggingNotifier"]
