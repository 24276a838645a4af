"""Connection and migration configuration for influx-migrate.

This module defines the configuration dataclasses for the source (InfluxDB 2.x)
and destination (InfluxDB 3.x) stores plus the migration tuning knobs, and
merges them from defaults, environment, a config file and command-line flags.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import urllib.parse

import yaml
from dotenv import find_dotenv, load_dotenv

from ..migration.exceptions import ConfigError


def _base_url(host: str, port: int, scheme: str) -> str:
    """Build a base URL, honouring a scheme or port already present in ``host``."""
    if "://" in host:
        parsed = urllib.parse.urlparse(host)
        netloc = parsed.netloc if parsed.port else f"{parsed.hostname}:{port}"
        return f"{parsed.scheme}://{netloc}"
    return f"{scheme}://{host}:{port}"


@dataclass
class SourceConfig:
    """InfluxDB 2.x source connection.

    Attributes:
        host: Hostname, optionally with scheme and port (http://influx:8086)
        port: Port used when ``host`` carries none
        token: API token, sent as ``Authorization: Token <token>``
        org: Organization owning the bucket
        bucket: Bucket to read from
        scheme: http or https when ``host`` carries no scheme
    """

    host: str = ""
    port: int = 8086
    token: str = ""
    org: str = ""
    bucket: str = ""
    scheme: str = "http"

    def __post_init__(self) -> None:
        self.port = int(self.port)
        if not 1 <= self.port <= 65535:
            raise ConfigError(f"source port must be 1-65535, got {self.port}")

    @property
    def base_url(self) -> str:
        return _base_url(self.host, self.port, self.scheme)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view (token intentionally excluded)."""
        return {
            "host": self.host,
            "port": self.port,
            "org": self.org,
            "bucket": self.bucket,
            "scheme": self.scheme,
        }


@dataclass
class DestinationConfig:
    """InfluxDB 3.x destination connection.

    Attributes:
        host: Hostname, optionally with scheme and port
        port: Port used when ``host`` carries none
        token: API token, sent as ``Authorization: Bearer <token>``
        database: Database to write into
        scheme: http or https when ``host`` carries no scheme
    """

    host: str = ""
    port: int = 8181
    token: str = ""
    database: str = ""
    scheme: str = "http"

    def __post_init__(self) -> None:
        self.port = int(self.port)
        if not 1 <= self.port <= 65535:
            raise ConfigError(f"destination port must be 1-65535, got {self.port}")

    @property
    def base_url(self) -> str:
        return _base_url(self.host, self.port, self.scheme)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view (token intentionally excluded)."""
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "scheme": self.scheme,
        }


@dataclass
class MigrationSettings:
    """Tuning for a migration run."""

    batch_size: int = 10000
    checkpoint_interval: int = 100000
    checkpoint_path: str = "./checkpoints"
    verify: bool = True
    request_timeout: float = 30.0  # seconds, per HTTP request
    write_concurrency: int = 8  # parallel single-point writes while isolating failures
    default_start: str = "1970-01-01T00:00:00Z"
    read_window: float = 3600.0  # seconds of data per sorted source query

    def __post_init__(self) -> None:
        self.batch_size = int(self.batch_size)
        self.checkpoint_interval = int(self.checkpoint_interval)
        self.request_timeout = float(self.request_timeout)
        self.write_concurrency = int(self.write_concurrency)
        self.read_window = float(self.read_window)
        if isinstance(self.verify, str):
            self.verify = self.verify.strip().lower() != "false"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_size": self.batch_size,
            "checkpoint_interval": self.checkpoint_interval,
            "checkpoint_path": self.checkpoint_path,
            "verify": self.verify,
            "request_timeout": self.request_timeout,
            "write_concurrency": self.write_concurrency,
            "default_start": self.default_start,
            "read_window": self.read_window,
        }


@dataclass
class AppConfig:
    """Complete configuration for one source/destination pair."""

    source: SourceConfig = field(default_factory=SourceConfig)
    destination: DestinationConfig = field(default_factory=DestinationConfig)
    migration: MigrationSettings = field(default_factory=MigrationSettings)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        """Create AppConfig from a nested dictionary, ignoring unknown keys."""
        return cls(
            source=_build(SourceConfig, data.get("source")),
            destination=_build(DestinationConfig, data.get("destination")),
            migration=_build(MigrationSettings, data.get("migration")),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization (tokens excluded)."""
        return {
            "source": self.source.to_dict(),
            "destination": self.destination.to_dict(),
            "migration": self.migration.to_dict(),
        }


def _build(cls, data: Optional[Dict[str, Any]]):
    data = data or {}
    return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__ and v is not None})


# Environment variable -> (section, key)
ENV_MAPPING = {
    "INFLUX_2X_HOST": ("source", "host"),
    "INFLUX_2X_PORT": ("source", "port"),
    "INFLUX_2X_TOKEN": ("source", "token"),
    "INFLUX_2X_ORG": ("source", "org"),
    "INFLUX_2X_BUCKET": ("source", "bucket"),
    "INFLUX_3X_HOST": ("destination", "host"),
    "INFLUX_3X_PORT": ("destination", "port"),
    "INFLUX_3X_TOKEN": ("destination", "token"),
    "INFLUX_3X_DATABASE": ("destination", "database"),
    "MIGRATION_BATCH_SIZE": ("migration", "batch_size"),
    "MIGRATION_CHECKPOINT_INTERVAL": ("migration", "checkpoint_interval"),
    "MIGRATION_CHECKPOINT_PATH": ("migration", "checkpoint_path"),
    "MIGRATION_VERIFY": ("migration", "verify"),
    "MIGRATION_REQUEST_TIMEOUT": ("migration", "request_timeout"),
    "MIGRATION_WRITE_CONCURRENCY": ("migration", "write_concurrency"),
    "MIGRATION_READ_WINDOW": ("migration", "read_window"),
}


def config_from_env(environ: Optional[Dict[str, str]] = None) -> Dict[str, Dict[str, Any]]:
    """Collect configuration sections from environment variables."""
    environ = os.environ if environ is None else environ
    sections: Dict[str, Dict[str, Any]] = {}
    for env_var, (section, key) in ENV_MAPPING.items():
        value = environ.get(env_var)
        if value not in (None, ""):
            sections.setdefault(section, {})[key] = value
    return sections


def config_from_file(config_path: str) -> Dict[str, Dict[str, Any]]:
    """Load configuration sections from a YAML (or JSON) file."""
    path = Path(config_path).expanduser()
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load configuration file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {path} must contain a mapping")
    return data


def merge_sections(*layers: Optional[Dict[str, Dict[str, Any]]]) -> Dict[str, Dict[str, Any]]:
    """Merge section dictionaries; later layers win, None values are ignored."""
    merged: Dict[str, Dict[str, Any]] = {"source": {}, "destination": {}, "migration": {}}
    for layer in layers:
        if not layer:
            continue
        for section in merged:
            for key, value in (layer.get(section) or {}).items():
                if value is not None:
                    merged[section][key] = value
    return merged


def validate_config(config: AppConfig) -> List[str]:
    """Return a list of configuration problems (empty when valid)."""
    errors = []
    if not config.source.host:
        errors.append("Source host is required")
    if not config.source.token:
        errors.append("Source token is required")
    if not config.source.org:
        errors.append("Source organization is required")
    if not config.source.bucket:
        errors.append("Source bucket is required")
    if not config.destination.host:
        errors.append("Destination host is required")
    if not config.destination.token:
        errors.append("Destination token is required")
    if not config.destination.database:
        errors.append("Destination database is required")
    if config.migration.batch_size <= 0:
        errors.append("Batch size must be positive")
    if config.migration.checkpoint_interval <= 0:
        errors.append("Checkpoint interval must be positive")
    if config.migration.write_concurrency <= 0:
        errors.append("Write concurrency must be positive")
    if config.migration.read_window <= 0:
        errors.append("Read window must be positive")
    return errors


def load_config(
    config_path: Optional[str] = None,
    overrides: Optional[Dict[str, Dict[str, Any]]] = None,
    validate: bool = True,
) -> AppConfig:
    """
    Build the effective configuration.

    Priority: overrides (command-line flags) > config file > environment > defaults.

    Args:
        config_path: Optional path to a YAML/JSON configuration file
        overrides: Section dictionaries taken from command-line flags
        validate: Raise ConfigError when required settings are missing

    Returns:
        AppConfig instance
    """
    load_dotenv(find_dotenv(usecwd=True))

    file_layer = config_from_file(config_path) if config_path else None
    merged = merge_sections(config_from_env(), file_layer, overrides)
    try:
        config = AppConfig.from_dict(merged)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    if validate:
        problems = validate_config(config)
        if problems:
            raise ConfigError("Configuration validation failed", problems)
    return config
