from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import yaml
from dotenv import load_dotenv

from eximpilot.errors import ConfigError

# Valid log levels for configuration
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

DEFAULT_LOG_FILES = [
    "/var/log/exim4/mainlog",
    "/var/log/exim4/rejectlog",
    "/var/log/exim4/paniclog",
]


@dataclass
class DatabaseConfig:
    """Configuration for the persistent store.

    Attributes:
        url: SQLAlchemy database URL
        echo: Whether SQLAlchemy should log every statement
    """

    url: str = "sqlite:///eximpilot.db"
    echo: bool = False

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("Database url must be provided")


@dataclass
class WatcherConfig:
    """Configuration for tailing the Exim log files.

    Attributes:
        log_files: Absolute paths of the log files to tail
        poll_interval: Seconds between checks for new data
        retry_interval: Seconds between attempts to open a missing file
        start_at_end: Skip existing content when a file is first opened
    """

    log_files: list[str] = field(
        default_factory=lambda: list(DEFAULT_LOG_FILES)
    )
    poll_interval: float = 0.5
    retry_interval: float = 5.0
    start_at_end: bool = True

    def __post_init__(self) -> None:
        for path in self.log_files:
            if not path or not os.path.isabs(path):
                raise ValueError(f"Log file path must be absolute: {path!r}")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")


@dataclass
class IngestionConfig:
    """Configuration for batching parsed events into the store."""

    batch_size: int = 500
    flush_interval: float = 2.0
    queue_size: int = 10000
    put_timeout: float = 1.0
    max_retries: int = 3
    retry_backoff: float = 0.1
    shutdown_timeout: float = 10.0
    unknown_warn_ratio: float = 0.5
    unknown_window: int = 1000

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")


@dataclass
class BacklogConfig:
    """Configuration for historical (backlog) processing.

    Attributes:
        chunk_size: Bytes read from the file per chunk
        workers: Number of parser threads
        batch_size: Events per store transaction
        deduplicate: Drop identical raw lines within one batch
        on_startup: Process the watched files from the start before tailing
    """

    chunk_size: int = 65536
    workers: int = 4
    batch_size: int = 1000
    deduplicate: bool = False
    on_startup: bool = False

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")


@dataclass
class QueueConfig:
    """Configuration for the Exim command-line boundary.

    Attributes:
        exim_path: Absolute path of the Exim binary
        command_timeout: Seconds before an Exim invocation is abandoned
    """

    exim_path: str = "/usr/sbin/exim4"
    command_timeout: float = 30.0

    def __post_init__(self) -> None:
        if not os.path.isabs(self.exim_path):
            raise ValueError(f"exim_path must be absolute: {self.exim_path}")


@dataclass
class RetentionConfig:
    """Retention horizons in days; 0 keeps rows forever.

    Attributes:
        interval_hours: Hours between scheduled purges while watching; 0
            leaves purging to the ``purge`` command
    """

    log_days: int = 90
    attempt_days: int = 180
    audit_days: int = 365
    snapshot_days: int = 30
    interval_hours: float = 24.0

    def __post_init__(self) -> None:
        if self.interval_hours < 0:
            raise ValueError("interval_hours must not be negative")


@dataclass
class SnapshotConfig:
    interval: float = 300.0
    enabled: bool = True


@dataclass
class Config:
    """Main configuration class for eximpilot.

    Attributes:
        log_level: Logging level for the application
        database: Persistent store settings
        watcher: Log tailing settings
        ingestion: Live ingestion batching settings
        backlog: Historical processing settings
        queue: Exim binary settings
        retention: Retention horizons
        snapshot: Queue snapshot sampling settings
    """

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = (
        "INFO"
    )
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    backlog: BacklogConfig = field(default_factory=BacklogConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)

    def __post_init__(self) -> None:
        # Validate log level
        if self.log_level not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {self.log_level}")

        # Convert dicts to config objects if needed
        if isinstance(self.database, dict):
            self.database = DatabaseConfig(**self.database)
        if isinstance(self.watcher, dict):
            self.watcher = WatcherConfig(**self.watcher)
        if isinstance(self.ingestion, dict):
            self.ingestion = IngestionConfig(**self.ingestion)
        if isinstance(self.backlog, dict):
            self.backlog = BacklogConfig(**self.backlog)
        if isinstance(self.queue, dict):
            self.queue = QueueConfig(**self.queue)
        if isinstance(self.retention, dict):
            self.retention = RetentionConfig(**self.retention)
        if isinstance(self.snapshot, dict):
            self.snapshot = SnapshotConfig(**self.snapshot)


def _load_env_overrides(config_data: dict) -> None:
    """Apply environment variables on top of the file contents."""
    database_url = os.getenv("EXIMPILOT_DATABASE_URL")
    if database_url:
        config_data.setdefault("database", {})
        config_data["database"]["url"] = database_url

    exim_path = os.getenv("EXIMPILOT_EXIM_PATH")
    if exim_path:
        config_data.setdefault("queue", {})
        config_data["queue"]["exim_path"] = exim_path

    log_level = os.getenv("EXIMPILOT_LOG_LEVEL")
    if log_level:
        config_data["log_level"] = log_level.upper()


def load_config(config_path: str | None = None) -> Config:
    """Load configuration from YAML file.

    Uses EXIMPILOT_CONFIG environment variable or 'config.yaml' as default path.
    EXIMPILOT_DATABASE_URL, EXIMPILOT_EXIM_PATH and EXIMPILOT_LOG_LEVEL take
    precedence over values in the file.

    Args:
        config_path: Optional path to configuration file. If not provided, uses
            EXIMPILOT_CONFIG environment variable or 'config.yaml' as default.

    Returns:
        Config: The loaded configuration object

    Raises:
        FileNotFoundError: If the configuration file doesn't exist
        ConfigError: If the configuration file contains invalid data
    """
    config_path = config_path or os.getenv("EXIMPILOT_CONFIG", "config.yaml")
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")

    # Load .env file from the same directory as the config file.
    # override=False ensures shell env vars take precedence over .env.
    dotenv_path = Path(config_path).resolve().parent / ".env"
    load_dotenv(dotenv_path=dotenv_path, override=False)

    with open(config_path) as f:
        config_data = yaml.safe_load(f) or {}

    if not isinstance(config_data, dict):
        raise ConfigError(f"Config file must contain a mapping: {config_path}")

    _load_env_overrides(config_data)

    try:
        return Config(**config_data)
    except Exception as e:
        raise ConfigError(f"Error loading config: {e}") from e
