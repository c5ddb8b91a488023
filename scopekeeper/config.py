"""
Configuration management for scopekeeper.

Loads and validates ``config.yaml`` from the scopekeeper home directory
(``$SCOPEKEEPER_HOME`` or ``~/.config/scopekeeper``).

The engine never reads configuration from ambient state: the CLI loads a
ScopekeeperConfig once and passes it (or the objects built from it)
explicitly to every Scope, so scopes with different backends can coexist
in one process.
"""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import ConfigError
from .retry import RetryPolicy

BACKEND_TYPES = ("local", "gcs", "composite", "memory")
FINALIZE_STRATEGIES = ("conservative", "aggressive")
DESTROY_STRATEGIES = ("sequential", "parallel")
LOG_FORMATS = ("structured", "pretty")


def get_scopekeeper_home() -> Path:
    """Return the scopekeeper home directory."""
    env_home = os.environ.get("SCOPEKEEPER_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path("~/.config/scopekeeper").expanduser()


def _section(cls, data: Any, name: str):
    """Build a section dataclass from a mapping, rejecting unknown keys."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"'{name}' must be a mapping, got {type(data).__name__}")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown key(s) in '{name}': {', '.join(unknown)}")
    return cls(**data)


@dataclass
class BackendConfig:
    """Where state documents live."""
    type: str = "local"
    root: str = "~/.local/share/scopekeeper/state"
    bucket: Optional[str] = None
    prefix: str = ""
    project: Optional[str] = None
    credentials_file: Optional[str] = None
    secondary: Optional["BackendConfig"] = None

    @classmethod
    def from_dict(cls, data: Any, name: str = "backend") -> "BackendConfig":
        if isinstance(data, dict) and data.get("secondary") is not None:
            data = dict(data)
            data["secondary"] = cls.from_dict(data["secondary"], name=f"{name}.secondary")
        return _section(cls, data, name)

    @property
    def root_path(self) -> Path:
        return Path(self.root).expanduser()

    def validate(self, name: str = "backend") -> None:
        if self.type not in BACKEND_TYPES:
            raise ConfigError(f"{name}.type must be one of {', '.join(BACKEND_TYPES)}, got '{self.type}'")
        if self.type == "local" and not self.root:
            raise ConfigError(f"{name}.root is required for the local backend")
        if self.type == "gcs" and not self.bucket:
            raise ConfigError(f"{name}.bucket is required for the gcs backend")
        if self.type == "composite":
            if self.secondary is None:
                raise ConfigError(f"{name}.secondary is required for the composite backend")
            if self.secondary.type == "composite":
                raise ConfigError(f"{name}.secondary cannot itself be composite")
            # The composite's own fields describe its primary
            self.primary().validate(f"{name}.primary")
            self.secondary.validate(f"{name}.secondary")

    def primary(self) -> "BackendConfig":
        """For composite backends: the primary described by this section's fields."""
        primary_type = "gcs" if self.bucket else "local"
        return BackendConfig(
            type=primary_type,
            root=self.root,
            bucket=self.bucket,
            prefix=self.prefix,
            project=self.project,
            credentials_file=self.credentials_file,
        )


@dataclass
class LockConfig:
    """Lease settings."""
    ttl_seconds: float = 600.0
    wait_seconds: float = 0.0

    def validate(self) -> None:
        if self.ttl_seconds <= 0:
            raise ConfigError("lock.ttl_seconds must be positive")
        if self.wait_seconds < 0:
            raise ConfigError("lock.wait_seconds must be >= 0")

    @property
    def ttl_ms(self) -> int:
        return int(self.ttl_seconds * 1000)


@dataclass
class VersioningConfig:
    """Snapshot retention."""
    enabled: bool = True
    max_backup_versions: int = 10

    def validate(self) -> None:
        if self.max_backup_versions < 1:
            raise ConfigError("versioning.max_backup_versions must be >= 1")


@dataclass
class RetryConfig:
    """Backoff for transient backend errors."""
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 30.0

    def validate(self) -> None:
        try:
            self.to_policy()
        except ValueError as e:
            raise ConfigError(f"retry: {e}") from e

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
            backoff_multiplier=self.backoff_multiplier,
            max_backoff_seconds=self.max_backoff_seconds,
        )


@dataclass
class FinalizeConfig:
    """Defaults for finalize()."""
    strategy: str = "conservative"
    destroy_strategy: str = "sequential"
    retry_attempts: int = 3
    concurrency: int = 5
    destroy_timeout: Optional[float] = None

    def validate(self) -> None:
        if self.strategy not in FINALIZE_STRATEGIES:
            raise ConfigError(f"finalize.strategy must be one of {', '.join(FINALIZE_STRATEGIES)}")
        if self.destroy_strategy not in DESTROY_STRATEGIES:
            raise ConfigError(f"finalize.destroy_strategy must be one of {', '.join(DESTROY_STRATEGIES)}")
        if self.retry_attempts < 1:
            raise ConfigError("finalize.retry_attempts must be >= 1")
        if self.concurrency < 1:
            raise ConfigError("finalize.concurrency must be >= 1")
        if self.destroy_timeout is not None and (
            not isinstance(self.destroy_timeout, (int, float)) or self.destroy_timeout <= 0
        ):
            raise ConfigError("finalize.destroy_timeout must be a number of seconds > 0")


@dataclass
class MonitorConfig:
    """Health thresholds for the monitor."""
    interval_seconds: int = 300
    max_scopes: int = 50
    max_resources: int = 100
    max_age_days: float = 30.0

    def validate(self) -> None:
        if self.interval_seconds < 0:
            raise ConfigError("monitor.interval_seconds must be >= 0")
        if self.max_age_days <= 0:
            raise ConfigError("monitor.max_age_days must be positive")


@dataclass
class LoggingConfig:
    """Logging output."""
    level: str = "INFO"
    format: str = "pretty"
    file: Optional[str] = None
    console: bool = True

    def validate(self) -> None:
        if self.format not in LOG_FORMATS:
            raise ConfigError(f"logging.format must be one of {', '.join(LOG_FORMATS)}")
        if self.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"logging.level '{self.level}' is not a logging level")

    @property
    def file_path(self) -> Optional[Path]:
        return Path(self.file).expanduser() if self.file else None


@dataclass
class ScopekeeperConfig:
    """Complete scopekeeper configuration."""
    backend: BackendConfig = field(default_factory=BackendConfig)
    lock: LockConfig = field(default_factory=LockConfig)
    versioning: VersioningConfig = field(default_factory=VersioningConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    finalize: FinalizeConfig = field(default_factory=FinalizeConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    config_path: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], config_path: Optional[Path] = None) -> "ScopekeeperConfig":
        """
        Build and validate a config from a parsed YAML mapping.

        Raises:
            ConfigError: On unknown sections/keys or invalid values
        """
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a mapping")
        sections = {"backend", "lock", "versioning", "retry", "finalize", "monitor", "logging"}
        unknown = sorted(set(data) - sections)
        if unknown:
            raise ConfigError(f"Unknown configuration section(s): {', '.join(unknown)}")
        try:
            config = cls(
                backend=BackendConfig.from_dict(data.get("backend")),
                lock=_section(LockConfig, data.get("lock"), "lock"),
                versioning=_section(VersioningConfig, data.get("versioning"), "versioning"),
                retry=_section(RetryConfig, data.get("retry"), "retry"),
                finalize=_section(FinalizeConfig, data.get("finalize"), "finalize"),
                monitor=_section(MonitorConfig, data.get("monitor"), "monitor"),
                logging=_section(LoggingConfig, data.get("logging"), "logging"),
                config_path=config_path,
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e
        config.validate()
        return config

    def validate(self) -> None:
        """Validate every section."""
        self.backend.validate()
        self.lock.validate()
        self.versioning.validate()
        self.retry.validate()
        self.finalize.validate()
        self.monitor.validate()
        self.logging.validate()

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a YAML-friendly mapping (used by ``scopekeeper init``)."""
        data = asdict(self)
        data.pop("config_path", None)
        if data["backend"].get("secondary") is None:
            data["backend"].pop("secondary")
        return data

    def __repr__(self) -> str:
        return f"ScopekeeperConfig(backend={self.backend.type}, lock_ttl={self.lock.ttl_seconds}s)"


def load_config(config_path: Optional[Path] = None) -> ScopekeeperConfig:
    """
    Load scopekeeper configuration from YAML.

    Args:
        config_path: Path to config file. Defaults to <home>/config.yaml

    Returns:
        ScopekeeperConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the config is invalid
    """
    if config_path is None:
        config_path = get_scopekeeper_home() / "config.yaml"
    config_path = Path(config_path).expanduser()

    if not config_path.exists():
        raise FileNotFoundError(f"scopekeeper config.yaml not found at {config_path}")

    try:
        with open(config_path, "r") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}") from e

    if not raw:
        raise ConfigError("Configuration file is empty")

    return ScopekeeperConfig.from_dict(raw, config_path=config_path)
