"""Work pipeline configuration from YAML file.

Loads from config/config.yaml with all settings in one place:
- Queue names, visibility timeout, redrive budget and dedup window
- Work store table names and backend
- Idempotency TTLs
- Item processor and dead-letter handler worker pools
- Observability ports

Environment variables ARE supported using ${VAR_NAME} and
${VAR_NAME:-default} syntax in YAML files.
"""

import json
import logging
import os
import re
import sys
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from core.errors.exceptions import ConfigurationError

# Configure module logger
logger = logging.getLogger(__name__)


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file and return dict."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR_NAME} and ${VAR_NAME:-default} environment variables in config data."""
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        pattern = r"\$\{([^}:]+)(?::-(([^}]*))?)?\}"

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else match.group(0)
            return os.getenv(var_name, default_value)

        expanded = re.sub(pattern, replacer, data)
        # A whole-value substitution may produce a number or boolean
        if expanded and expanded != data and re.fullmatch(pattern, data):
            return yaml.safe_load(expanded)
        return expanded
    else:
        return data


# Default config file: config/config.yaml in src/ directory
DEFAULT_CONFIG_FILE = Path(__file__).parent / "config.yaml"

FAULT_INJECTION_MODES = ["none", "suffix", "always", "first_n"]
STORE_BACKENDS = ["memory", "json"]


@dataclass
class QueueSettings:
    """Ordered work queue and dead-letter queue settings.

    All durations in seconds.
    """

    work_queue: str = "orders-work-queue.fifo"
    dead_letter_queue: str = "orders-dead-letter-queue.fifo"
    visibility_timeout_seconds: float = 30.0
    max_receive_count: int = 3
    deduplication_window_seconds: float = 300.0
    work_retention_seconds: float = 4 * 24 * 3600  # 4 days
    dlq_retention_seconds: float = 14 * 24 * 3600  # 14 days


@dataclass
class TableSettings:
    """Work store table identifiers."""

    orders: str = "OrdersTable"
    items: str = "OrderItemsTable"
    idempotency: str = "IdempotencyTable"


@dataclass
class StoreSettings:
    """Work store backend selection."""

    backend: str = "memory"  # "memory" or "json"
    path: str = "data/work-store.json"


@dataclass
class IdempotencySettings:
    ttl_seconds: int = 3600
    in_progress_timeout_seconds: int = 60
    purge_interval_seconds: float = 300.0


@dataclass
class ProcessorSettings:
    """Item processor pool and simulated unit of work."""

    concurrency: int = 4
    batch_size: int = 1
    poll_wait_seconds: float = 1.0
    work_min_delay_seconds: float = 0.5
    work_max_delay_seconds: float = 1.5
    fault_injection: str = "none"
    fail_first_n: int = 1
    fault_probability: float = 0.5


@dataclass
class DeadLetterSettings:
    """Dead-letter handler pool."""

    concurrency: int = 1
    batch_size: int = 10
    poll_wait_seconds: float = 1.0


@dataclass
class WorkPipelineConfig:
    """Work pipeline configuration.

    Configuration structure:
        pipeline:
          domain: orders
          queues: {...}           # Queue names, visibility, redrive budget
          tables: {...}           # Work store table identifiers
          store: {...}            # Work store backend
          idempotency: {...}      # Guard TTLs
          processor: {...}        # Item processor pool + simulated work
          dead_letter: {...}      # Dead-letter handler pool
          aggregate_order_status: false
          health_port: 8080
          metrics_port: 8000
          stats_interval_seconds: 30
    """

    domain: str = "orders"
    queues: QueueSettings = field(default_factory=QueueSettings)
    tables: TableSettings = field(default_factory=TableSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    idempotency: IdempotencySettings = field(default_factory=IdempotencySettings)
    processor: ProcessorSettings = field(default_factory=ProcessorSettings)
    dead_letter: DeadLetterSettings = field(default_factory=DeadLetterSettings)
    aggregate_order_status: bool = False
    health_port: int = 8080
    metrics_port: int = 8000
    stats_interval_seconds: int = 30

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkPipelineConfig":
        """Build config from the `pipeline:` section, ignoring unknown keys."""
        sections = {
            "queues": QueueSettings,
            "tables": TableSettings,
            "store": StoreSettings,
            "idempotency": IdempotencySettings,
            "processor": ProcessorSettings,
            "dead_letter": DeadLetterSettings,
        }
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            section_cls = sections.get(f.name)
            if section_cls is not None:
                value = _build_section(section_cls, value or {}, f.name)
            kwargs[f.name] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> None:
        """Validate configuration for correctness and constraints.

        Raises:
            ConfigurationError: On the first invalid setting found
        """
        queues = asdict(self.queues)
        if not self.queues.work_queue:
            raise ConfigurationError("queues.work_queue is required")
        if not self.queues.dead_letter_queue:
            raise ConfigurationError("queues.dead_letter_queue is required")
        if self.queues.work_queue == self.queues.dead_letter_queue:
            raise ConfigurationError(
                "queues.dead_letter_queue must differ from queues.work_queue"
            )
        self._validate_min(queues, "visibility_timeout_seconds", 0, inclusive=False, context="queues")
        self._validate_range(queues, "max_receive_count", 1, 1000, context="queues")
        self._validate_min(queues, "deduplication_window_seconds", 0, inclusive=True, context="queues")
        self._validate_min(queues, "work_retention_seconds", 0, inclusive=False, context="queues")
        self._validate_min(queues, "dlq_retention_seconds", 0, inclusive=False, context="queues")

        for key, value in asdict(self.tables).items():
            if not value:
                raise ConfigurationError(f"tables.{key} is required")

        self._validate_enum(asdict(self.store), "backend", STORE_BACKENDS, "store")

        idempotency = asdict(self.idempotency)
        self._validate_min(idempotency, "ttl_seconds", 0, inclusive=False, context="idempotency")
        self._validate_min(
            idempotency, "in_progress_timeout_seconds", 0, inclusive=False, context="idempotency"
        )
        self._validate_min(
            idempotency, "purge_interval_seconds", 0, inclusive=False, context="idempotency"
        )
        if self.idempotency.in_progress_timeout_seconds > self.idempotency.ttl_seconds:
            raise ConfigurationError(
                "idempotency: in_progress_timeout_seconds "
                f"({self.idempotency.in_progress_timeout_seconds}) must be <= "
                f"ttl_seconds ({self.idempotency.ttl_seconds})"
            )

        processor = asdict(self.processor)
        self._validate_range(processor, "concurrency", 1, 256, "processor")
        # One message per invocation keeps partition order intact
        self._validate_range(processor, "batch_size", 1, 1, "processor")
        self._validate_min(processor, "poll_wait_seconds", 0, inclusive=True, context="processor")
        self._validate_min(processor, "work_min_delay_seconds", 0, inclusive=True, context="processor")
        if self.processor.work_max_delay_seconds < self.processor.work_min_delay_seconds:
            raise ConfigurationError(
                "processor: work_max_delay_seconds must be >= work_min_delay_seconds"
            )
        self._validate_enum(processor, "fault_injection", FAULT_INJECTION_MODES, "processor")
        self._validate_min(processor, "fail_first_n", 0, inclusive=True, context="processor")
        self._validate_range(processor, "fault_probability", 0.0, 1.0, "processor")

        dead_letter = asdict(self.dead_letter)
        self._validate_range(dead_letter, "concurrency", 1, 64, "dead_letter")
        self._validate_range(dead_letter, "batch_size", 1, 10, "dead_letter")
        self._validate_min(dead_letter, "poll_wait_seconds", 0, inclusive=True, context="dead_letter")

        top = {
            "health_port": self.health_port,
            "metrics_port": self.metrics_port,
            "stats_interval_seconds": self.stats_interval_seconds,
        }
        self._validate_range(top, "health_port", 0, 65535, "pipeline")
        self._validate_range(top, "metrics_port", 0, 65535, "pipeline")
        self._validate_min(top, "stats_interval_seconds", 0, inclusive=False, context="pipeline")

    @staticmethod
    def _validate_enum(
        settings: Dict[str, Any],
        key: str,
        valid_values: List[Any],
        context: str
    ) -> None:
        """Validate that a setting's value is in a list of valid values."""
        if key in settings and settings[key] not in valid_values:
            raise ConfigurationError(
                f"{context}: {key} must be one of {valid_values}, "
                f"got '{settings[key]}'"
            )

    @staticmethod
    def _validate_min(
        settings: Dict[str, Any],
        key: str,
        min_value: float,
        inclusive: bool,
        context: str
    ) -> None:
        """Validate that a setting's value meets a minimum threshold."""
        if key in settings:
            value = settings[key]
            if inclusive and value < min_value:
                raise ConfigurationError(
                    f"{context}: {key} must be >= {min_value}, got {value}"
                )
            elif not inclusive and value <= min_value:
                raise ConfigurationError(
                    f"{context}: {key} must be > {min_value}, got {value}"
                )

    @staticmethod
    def _validate_range(
        settings: Dict[str, Any],
        key: str,
        min_value: float,
        max_value: float,
        context: str
    ) -> None:
        """Validate that a setting's value is within a range (inclusive)."""
        if key in settings:
            value = settings[key]
            if not (min_value <= value <= max_value):
                raise ConfigurationError(
                    f"{context}: {key} must be between {min_value} and {max_value}, got {value}"
                )


def _build_section(section_cls: type, data: Dict[str, Any], name: str) -> Any:
    if not isinstance(data, dict):
        raise ConfigurationError(f"{name} must be a mapping, got {type(data).__name__}")
    known = {f.name for f in fields(section_cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning(f"Ignoring unknown keys in {name}: {unknown}")
    return section_cls(**{k: v for k, v in data.items() if k in known})


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base dict."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> WorkPipelineConfig:
    """Load pipeline configuration from config.yaml file.

    Environment variables ARE supported using ${VAR_NAME} syntax in YAML files.

    Args:
        config_path: YAML file to load (default: config/config.yaml)
        overrides: Nested dict deep-merged over the `pipeline:` section

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigurationError: If the file is malformed or a setting is invalid
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_FILE

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n" f"Expected file: config/config.yaml"
        )

    logger.info(f"Loading configuration from file: {config_path}")
    yaml_data = load_yaml(config_path)
    yaml_data = _expand_env_vars(yaml_data)

    if "pipeline" not in yaml_data:
        raise ConfigurationError(
            "Invalid config file: missing 'pipeline:' section\n"
            "See config/config.yaml for correct structure"
        )

    pipeline_config = yaml_data["pipeline"] or {}

    if overrides:
        logger.debug(f"Applying overrides: {list(overrides.keys())}")
        pipeline_config = _deep_merge(pipeline_config, overrides)

    try:
        config = WorkPipelineConfig.from_dict(pipeline_config)
    except TypeError as e:
        raise ConfigurationError(f"Invalid pipeline configuration: {e}", cause=e) from e

    logger.debug("Configuration loaded successfully:")
    logger.debug(f"  - Work queue: {config.queues.work_queue}")
    logger.debug(f"  - Dead-letter queue: {config.queues.dead_letter_queue}")
    logger.debug(f"  - Store backend: {config.store.backend}")

    logger.debug("Validating configuration...")
    config.validate()
    logger.debug("Configuration validation passed")

    return config


_pipeline_config: Optional[WorkPipelineConfig] = None


def get_config() -> WorkPipelineConfig:
    """Get or load the singleton pipeline config instance."""
    global _pipeline_config
    if _pipeline_config is None:
        _pipeline_config = load_config()
    return _pipeline_config


def set_config(config: WorkPipelineConfig) -> None:
    """Set the singleton pipeline config instance (useful for testing)."""
    global _pipeline_config
    _pipeline_config = config


def reset_config() -> None:
    """Reset the singleton config instance (forces reload on next get_config() call)."""
    global _pipeline_config
    _pipeline_config = None


def _cli_main() -> int:
    """CLI entry point for config validation and debugging."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Work Pipeline Configuration Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Validate configuration
  python -m config.config --validate

  # Show merged configuration as JSON
  python -m config.config --show-merged

  # Use custom config file
  python -m config.config --config /path/to/config.yaml --validate
""",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    parser.add_argument("--validate", action="store_true", help="Validate configuration")
    parser.add_argument("--show-merged", action="store_true", help="Print merged configuration")
    args = parser.parse_args()

    try:
        config = load_config(config_path=args.config)
    except (FileNotFoundError, ConfigurationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.validate:
        print("Configuration is valid")
    if args.show_merged or not args.validate:
        print(json.dumps(config.to_dict(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(_cli_main())
