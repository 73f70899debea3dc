"""Configuration loading for the work pipeline.

Configuration lives in a single YAML file, ``config/config.yaml``, under a
top-level ``pipeline:`` section.

Main Functions
--------------

    - load_config(): Load and validate configuration from YAML
    - get_config(): Get or load the singleton config instance
    - set_config(): Replace the singleton (tests, embedding)
    - reset_config(): Reset the singleton config instance

Usage Examples
--------------

Load configuration:
    >>> from config import load_config
    >>>
    >>> config = load_config()
    >>> config.queues.max_receive_count
    3

Override settings (deep-merged over the file):
    >>> config = load_config(overrides={"processor": {"fault_injection": "always"}})

Configuration Priority
---------------------

1. ``overrides`` passed to load_config()
2. Environment variables referenced as ${VAR} / ${VAR:-default} in YAML
3. YAML configuration file
4. Dataclass defaults
"""

from config.config import (
    DEFAULT_CONFIG_FILE,
    DeadLetterSettings,
    IdempotencySettings,
    ProcessorSettings,
    QueueSettings,
    StoreSettings,
    TableSettings,
    WorkPipelineConfig,
    get_config,
    load_config,
    reset_config,
    set_config,
)

__all__ = [
    "DEFAULT_CONFIG_FILE",
    "WorkPipelineConfig",
    "QueueSettings",
    "TableSettings",
    "StoreSettings",
    "IdempotencySettings",
    "ProcessorSettings",
    "DeadLetterSettings",
    "load_config",
    "get_config",
    "set_config",
    "reset_config",
]
