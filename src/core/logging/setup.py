"""Logging setup and configuration."""

import io
import logging
import shutil
import sys
import threading
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from core.logging.context import set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter

# Default settings
DEFAULT_LOG_DIR = Path("logs")
DEFAULT_ROTATION_WHEN = "H"  # When to rotate: 'H' (hourly), 'midnight', etc.
DEFAULT_ROTATION_INTERVAL = 1  # Interval for rotation (every 1 hour)
DEFAULT_BACKUP_COUNT = 24  # Keep 24 hours of logs by default
DEFAULT_CONSOLE_LEVEL = logging.INFO
DEFAULT_FILE_LEVEL = logging.DEBUG

# Instance ID counter for multi-process deployments
_instance_counter = 0
_instance_counter_lock = threading.Lock()


def _get_next_instance_id() -> str:
    """Get next instance ID as ordinal number (thread-safe)."""
    global _instance_counter
    with _instance_counter_lock:
        instance_id = str(_instance_counter)
        _instance_counter += 1
        return instance_id


# Noisy loggers to suppress
NOISY_LOGGERS = [
    "aiohttp",
    "aiohttp.access",
    "asyncio",
]


class ArchivingTimedRotatingFileHandler(TimedRotatingFileHandler):
    """
    TimedRotatingFileHandler that moves rotated files to an archive folder.

    When a log file is rotated (e.g., file.log -> file.log.2026-01-22), the backup
    files are moved to an 'archive' subdirectory to keep the main log directory
    clean. If archive_dir is provided, rotated files are moved there instead.
    """

    def __init__(
        self,
        filename,
        when="midnight",
        interval=1,
        backupCount=0,
        encoding=None,
        delay=False,
        utc=False,
        archive_dir=None,
    ):
        super().__init__(filename, when, interval, backupCount, encoding, delay, utc)
        if archive_dir:
            self.archive_dir = Path(archive_dir)
        else:
            log_path = Path(self.baseFilename)
            self.archive_dir = log_path.parent / "archive"

        self.archive_dir.mkdir(parents=True, exist_ok=True)

    def doRollover(self):
        super().doRollover()

        log_path = Path(self.baseFilename)
        log_dir = log_path.parent
        base_name = log_path.name

        for rotated_file in log_dir.glob(f"{base_name}.*"):
            if rotated_file == log_path:
                continue

            archive_file = self.archive_dir / rotated_file.name
            try:
                shutil.move(str(rotated_file), str(archive_file))
            except OSError as e:
                # Not the logger: this runs inside the logging machinery
                print(
                    f"Warning: Failed to archive {rotated_file}: {e}", file=sys.stderr
                )


def get_log_file_path(
    log_dir: Path,
    domain: str | None = None,
    stage: str | None = None,
    instance_id: str | None = None,
) -> Path:
    """
    Build log file path with domain/date subfolder structure.

    Structure: {log_dir}/{domain}/{YYYY-MM-DD}/{domain}_{stage}_{MMDD}_{HHMM}_{instance}.log

    Examples:
        logs/orders/2026-01-05/orders_processor_0105_1430_0.log
        logs/orders/2026-01-05/orders_pipeline_0105_0930_1.log

    Args:
        log_dir: Base log directory
        domain: Pipeline domain
        stage: Stage name (ingestion, processor, dlq, pipeline)
        instance_id: Unique instance identifier (an ordinal is generated if omitted)

    Returns:
        Full path to log file
    """
    now = datetime.now()
    date_folder = now.strftime("%Y-%m-%d")
    date_str = now.strftime("%m%d")
    time_str = now.strftime("%H%M")

    if domain and stage:
        base_name = f"{domain}_{stage}_{date_str}_{time_str}"
    elif domain:
        base_name = f"{domain}_{date_str}_{time_str}"
    elif stage:
        base_name = f"{stage}_{date_str}_{time_str}"
    else:
        base_name = f"pipeline_{date_str}_{time_str}"

    phrase = instance_id or _get_next_instance_id()
    filename = f"{base_name}_{phrase}.log"

    if domain:
        return log_dir / domain / date_folder / filename
    return log_dir / date_folder / filename


def setup_logging(
    name: str = "workpipe",
    stage: str | None = None,
    domain: str | None = None,
    log_dir: Path | None = None,
    json_format: bool = True,
    console_level: int = DEFAULT_CONSOLE_LEVEL,
    file_level: int = DEFAULT_FILE_LEVEL,
    rotation_when: str = DEFAULT_ROTATION_WHEN,
    rotation_interval: int = DEFAULT_ROTATION_INTERVAL,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    suppress_noisy: bool = True,
    worker_id: str | None = None,
    use_instance_id: bool = True,
    log_to_stdout: bool = False,
) -> logging.Logger:
    """
    Configure logging with console and auto-archiving time-based rotating file handlers.

    Log files are organized by domain and date:
        logs/orders/2026-01-05/orders_pipeline_0105_1430_0.log

    Rotated backup files are moved to logs/archive/{domain}/{date}/.

    Args:
        name: Logger name returned to the caller
        stage: Stage name for per-stage log files
        domain: Pipeline domain
        log_dir: Directory for log files (default: ./logs)
        json_format: Use JSON format for file logs (default: True)
        console_level: Console handler level (default: INFO)
        file_level: File handler level (default: DEBUG)
        rotation_when: When to rotate logs - 'midnight', 'H' (hourly), 'M' (minutes)
        rotation_interval: Interval for rotation (default: 1)
        backup_count: Number of backup files to keep (default: 24)
        suppress_noisy: Quiet down HTTP server and asyncio loggers
        worker_id: Worker identifier for context
        use_instance_id: Append an ordinal instance id to the log filename
        log_to_stdout: Send all log output to stdout only, skipping file handlers.
            Useful for containerized deployments where logs are captured from stdout.

    Returns:
        Configured logger instance
    """
    log_dir = log_dir or DEFAULT_LOG_DIR

    if worker_id:
        set_log_context(worker_id=worker_id)
    if stage:
        set_log_context(stage=stage)
    if domain:
        set_log_context(domain=domain)

    console_formatter = ConsoleFormatter()
    if sys.platform == "win32":
        safe_stdout = io.TextIOWrapper(
            sys.stdout.buffer, encoding="utf-8", errors="replace"
        )
        console_handler = logging.StreamHandler(safe_stdout)
    else:
        console_handler = logging.StreamHandler(sys.stdout)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    root_logger.handlers.clear()

    log_file: Path | None = None
    if log_to_stdout:
        console_handler.setLevel(file_level)
        console_handler.setFormatter(console_formatter)
        root_logger.addHandler(console_handler)
    else:
        console_handler.setLevel(console_level)
        console_handler.setFormatter(console_formatter)

        instance_id = _get_next_instance_id() if use_instance_id else None
        log_file = get_log_file_path(
            log_dir, domain=domain, stage=stage, instance_id=instance_id
        )
        log_file.parent.mkdir(parents=True, exist_ok=True)

        if json_format:
            file_formatter = JSONFormatter()
        else:
            file_formatter = logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )

        # Structure: logs/archive/domain/date
        try:
            relative_path = log_file.relative_to(log_dir)
            archive_dir = log_dir / "archive" / relative_path.parent
        except ValueError:
            archive_dir = log_file.parent / "archive"

        file_handler = ArchivingTimedRotatingFileHandler(
            log_file,
            when=rotation_when,
            interval=rotation_interval,
            backupCount=backup_count,
            encoding="utf-8",
            archive_dir=archive_dir,
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(file_formatter)

        root_logger.addHandler(file_handler)
        root_logger.addHandler(console_handler)

    if suppress_noisy:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    logger = logging.getLogger(name)
    if log_file is None:
        logger.debug("Logging initialized: stdout-only mode")
    else:
        logger.debug(f"Logging initialized: file={log_file}, json={json_format}")

    return logger
