"""
Entry point for running the work pipeline.

Usage:
    # Run the pipeline until SIGINT/SIGTERM
    python -m workpipe run

    # Ingest a JSON list of orders, process them, print a report and exit
    python -m workpipe run --orders orders.json --drain

    # Use a different config file and log only to stdout
    python -m workpipe run --config my-config.yaml --log-to-stdout

    # Print item and order status from a JSON-file work store
    python -m workpipe report --store-path data/work-store.json

Environment variables from a ``.env`` file in the project root are loaded
before the config is read, so ``${VAR:-default}`` placeholders in
config.yaml can be set there.
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import socket
import sys
from pathlib import Path
from typing import Any

import coolname
from dotenv import load_dotenv
from prometheus_client import start_http_server

from config import load_config, set_config
from core.errors.exceptions import ConfigurationError, PersistenceError
from core.logging import log_startup_banner, setup_logging
from workpipe import __version__
from workpipe.common.store import JsonFileWorkStore
from workpipe.runners import build_report, format_report, run_pipeline

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent.parent

_shutdown_event: asyncio.Event | None = None


def get_shutdown_event() -> asyncio.Event:
    global _shutdown_event
    if _shutdown_event is None:
        _shutdown_event = asyncio.Event()
    return _shutdown_event


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="workpipe",
        description="Ordered work-item pipeline with retry and dead-letter handling",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python -m workpipe run
    python -m workpipe run --orders orders.json --drain
    python -m workpipe report --store-path data/work-store.json
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Start the pipeline")
    run.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: bundled src/config/config.yaml)",
    )
    run.add_argument(
        "--orders",
        type=Path,
        default=None,
        help="JSON file with a list of order requests to ingest after startup",
    )
    run.add_argument(
        "--drain",
        action="store_true",
        help="Exit once both queues are empty and print a status report",
    )
    run.add_argument(
        "--drain-timeout",
        type=float,
        default=None,
        help="Give up draining after this many seconds (default: wait forever)",
    )
    run.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Port for Prometheus metrics server (default: from config)",
    )
    run.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )
    run.add_argument(
        "--log-dir",
        type=Path,
        default=None,
        help="Log directory path (default: from LOG_DIR env var or ./logs)",
    )
    run.add_argument(
        "--log-to-stdout",
        action="store_true",
        help="Send all log output to stdout only, skipping file handlers. "
        "Can also be set via LOG_TO_STDOUT environment variable.",
    )

    report = subparsers.add_parser("report", help="Print item status from a JSON-file work store")
    report.add_argument(
        "--store-path",
        type=Path,
        default=None,
        help="Work store file (default: store.path from config)",
    )
    report.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    report.add_argument("--json", action="store_true", help="Print the report as JSON")

    return parser.parse_args(argv)


def start_metrics_server(preferred_port: int) -> int:
    """Start Prometheus metrics server with automatic port fallback.
    Returns actual port number that the server is listening on."""
    try:
        start_http_server(preferred_port)
        return preferred_port
    except OSError as e:
        if e.errno != 98:
            raise
        logger.info(
            "Port already in use, finding available port",
            extra={"preferred_port": preferred_port},
        )
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("", 0))
            s.listen(1)
            available_port = s.getsockname()[1]

        start_http_server(available_port)
        return available_port


def setup_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    """First signal sets the shutdown event; a second one cancels every task."""

    def handle_signal(sig):
        logger.info("Received signal, initiating graceful shutdown", extra={"signal": sig.name})
        shutdown_event = get_shutdown_event()
        if not shutdown_event.is_set():
            shutdown_event.set()
        else:
            logger.warning("Received second signal, forcing immediate shutdown...")
            for task in asyncio.all_tasks(loop):
                task.cancel()

    if sys.platform == "win32":
        logger.debug("Signal handlers not supported on Windows, using KeyboardInterrupt")
        return

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))


def load_orders(path: Path) -> list[dict[str, Any]]:
    """Read a JSON file holding one order request or a list of them."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        return [data]
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain an order object or a list of orders")
    return data


async def _run(
    args: argparse.Namespace, config, orders: list[dict[str, Any]] | None, instance_id: str
) -> dict[str, Any]:
    setup_signal_handlers(asyncio.get_running_loop())
    return await run_pipeline(
        config,
        get_shutdown_event(),
        orders=orders,
        drain=args.drain,
        drain_timeout=args.drain_timeout,
        instance_id=instance_id,
    )


def run_command(args: argparse.Namespace) -> int:
    log_to_stdout = args.log_to_stdout or os.getenv("LOG_TO_STDOUT", "").lower() in ("1", "true")
    log_dir = args.log_dir or (Path(os.environ["LOG_DIR"]) if os.getenv("LOG_DIR") else None)
    instance_id = coolname.generate_slug(2)

    try:
        config = load_config(args.config)
        config.validate()
    except (FileNotFoundError, ConfigurationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    set_config(config)

    try:
        orders = load_orders(args.orders) if args.orders else None
    except (OSError, ValueError) as e:
        print(f"Failed to load orders from {args.orders}: {e}", file=sys.stderr)
        return 1

    setup_logging(
        name="workpipe",
        stage="pipeline",
        domain=config.domain,
        log_dir=log_dir,
        console_level=getattr(logging, args.log_level),
        worker_id=instance_id,
        log_to_stdout=log_to_stdout,
    )

    metrics_port = start_metrics_server(args.metrics_port or config.metrics_port)

    log_startup_banner(
        logger,
        "Work Pipeline",
        version=__version__,
        instance_id=instance_id,
        domain=config.domain,
        work_queue=config.queues.work_queue,
        dead_letter_queue=config.queues.dead_letter_queue,
        store=f"{config.store.backend} ({config.store.path})"
        if config.store.backend == "json"
        else config.store.backend,
        health_port=config.health_port,
        metrics_port=metrics_port,
    )

    try:
        report = asyncio.run(_run(args, config, orders, instance_id))
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")
        return 130
    except PersistenceError as e:
        logger.error(f"Work store error: {e}", extra={"file": config.store.path})
        return 1

    print(format_report(report))
    return 0


def report_command(args: argparse.Namespace) -> int:
    store_path = args.store_path
    if store_path is None:
        try:
            store_path = Path(load_config(args.config).store.path)
        except (FileNotFoundError, ConfigurationError) as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            return 2

    if not store_path.exists():
        print(f"No work store at {store_path}", file=sys.stderr)
        return 1

    try:
        store = JsonFileWorkStore(store_path)
    except PersistenceError as e:
        print(f"Cannot read work store: {e}", file=sys.stderr)
        return 1

    report = asyncio.run(build_report(store))
    if args.json:
        print(json.dumps(report, indent=2))
    else:
        print(format_report(report))
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv(PROJECT_ROOT / ".env")
    args = parse_args(argv)

    if args.command == "run":
        return run_command(args)
    return report_command(args)


if __name__ == "__main__":
    sys.exit(main())
