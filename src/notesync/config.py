"""Configuration management with pydantic validation and YAML persistence.

The configuration file lives at ``<workspace>/config.yaml`` by default. Every
field may be overridden from the environment with
``NOTESYNC_<SECTION>__<FIELD>`` (for example ``NOTESYNC_DAEMON__MAX_SLEEP_SECONDS``).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "NOTESYNC_"
DEFAULT_WORKSPACE = Path.home() / ".notesync"


class WorkspaceConfig(BaseModel):
    """Filesystem layout.

    Attributes:
        path: Root directory for databases, locks, and partition artifacts
        log_level: Root logging level for CLI entry points
    """

    path: Path = Field(default=DEFAULT_WORKSPACE, description="Workspace root")
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("path")
    @classmethod
    def expand_path(cls, v: Path) -> Path:
        return Path(v).expanduser()

    @field_validator("log_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {v!r}")
        return level

    @property
    def store_path(self) -> Path:
        return self.path / "notes.db"

    @property
    def queue_path(self) -> Path:
        return self.path / "queue.db"

    @property
    def lock_dir(self) -> Path:
        return self.path / "locks"

    @property
    def partitions_dir(self) -> Path:
        return self.path / "partitions"

    @property
    def telemetry_dir(self) -> Path:
        return self.path / "telemetry"


class ApiConfig(BaseModel):
    """Near-real-time notes feed."""

    base_url: str = Field(default="https://api.openstreetmap.org/api/0.6")
    max_notes: int = Field(
        default=10000,
        ge=1,
        le=10000,
        description="Notes per request; reaching it triggers a bulk sync",
    )
    timeout_seconds: float = Field(default=60.0, gt=0)
    user_agent: str = Field(default="notesync/0.1")


class BulkConfig(BaseModel):
    """Bulk dump source and partition pipeline."""

    dump_url: str = Field(
        default="https://planet.openstreetmap.org/notes/planet-notes-latest.osn.bz2"
    )
    partition_count: int = Field(default=8, ge=1, le=256)
    max_workers: int = Field(default=4, ge=1, le=64)
    best_effort: bool = Field(
        default=False,
        description="Promote successful partitions even if some failed",
    )
    timeout_seconds: float = Field(default=600.0, gt=0)


class OverpassConfig(BaseModel):
    """Rate-limited boundary service."""

    interpreter_url: str = Field(default="https://overpass-api.de/api/interpreter")
    status_url: str = Field(default="https://overpass-api.de/api/status")
    timeout_seconds: float = Field(default=300.0, gt=0)


class TicketConfig(BaseModel):
    """Fair scheduler bounds.

    Attributes:
        lease_seconds: Time a ticket may stay current without release/heartbeat
        poll_interval_seconds: Sleep between turn checks
        wait_timeout_seconds: Default caller bound for ``wait_turn``
    """

    lease_seconds: float = Field(default=600.0, gt=0)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    wait_timeout_seconds: float = Field(default=1800.0, gt=0)

    @model_validator(mode="after")
    def poll_shorter_than_lease(self) -> "TicketConfig":
        if self.poll_interval_seconds >= self.lease_seconds:
            raise ValueError("poll_interval_seconds must be shorter than lease_seconds")
        return self


class RetryConfig(BaseModel):
    """Retry executor bounds."""

    max_attempts: int = Field(default=5, ge=1, le=20)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=60.0, ge=0)
    jitter_factor: float = Field(default=0.0, ge=0.0, le=1.0)


class DaemonConfig(BaseModel):
    """Daemon loop behaviour."""

    min_sleep_seconds: float = Field(default=5.0, ge=0)
    max_sleep_seconds: float = Field(default=300.0, gt=0)
    initial_sleep_seconds: float = Field(default=60.0, ge=0)
    busy_threshold: int = Field(
        default=1,
        ge=1,
        description="Items per cycle that count as substantial work",
    )
    max_consecutive_failures: int = Field(default=5, ge=1, le=100)

    @model_validator(mode="after")
    def sleep_bounds(self) -> "DaemonConfig":
        if self.min_sleep_seconds > self.max_sleep_seconds:
            raise ValueError("min_sleep_seconds must not exceed max_sleep_seconds")
        return self


class VerificationConfig(BaseModel):
    """Chunked verification engine."""

    chunk_size: int = Field(default=100000, ge=1)
    max_workers: int = Field(default=4, ge=1, le=64)
    chunk_max_attempts: int = Field(default=3, ge=1, le=20)


class NoteSyncConfig(BaseModel):
    """Root configuration."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    version: int = Field(default=1)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    bulk: BulkConfig = Field(default_factory=BulkConfig)
    overpass: OverpassConfig = Field(default_factory=OverpassConfig)
    tickets: TicketConfig = Field(default_factory=TicketConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Dict[str, Any]]:
    overrides: Dict[str, Dict[str, Any]] = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX) or "__" not in key:
            continue
        section, _, name = key[len(ENV_PREFIX):].lower().partition("__")
        if section not in NoteSyncConfig.model_fields:
            continue
        overrides.setdefault(section, {})[name] = value
    return overrides


def _format_validation_error(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in exc.errors()
    )


class ConfigurationManager:
    """Loads, validates, and saves the YAML configuration.

    Attributes:
        config_path: Path to configuration file
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        *,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.config_path = config_path or (DEFAULT_WORKSPACE / "config.yaml")
        self._environ = os.environ if environ is None else environ
        self._config: Optional[NoteSyncConfig] = None

    @property
    def config(self) -> NoteSyncConfig:
        if self._config is None:
            return self.load()
        return self._config

    def load(self) -> NoteSyncConfig:
        """Load and validate configuration.

        Raises:
            ConfigurationError: If the file is unreadable or invalid
        """
        data: Dict[str, Any] = {}
        if self.config_path.exists():
            try:
                with open(self.config_path, encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Invalid YAML in {self.config_path}: {exc}") from exc
            if not isinstance(data, dict):
                raise ConfigurationError(f"{self.config_path} must contain a mapping")

        for section, values in _env_overrides(self._environ).items():
            current = data.get(section) or {}
            if not isinstance(current, dict):
                raise ConfigurationError(f"Section {section!r} must be a mapping")
            data[section] = {**current, **values}

        try:
            self._config = NoteSyncConfig(**data)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid configuration: {_format_validation_error(exc)}"
            ) from exc

        logger.debug(
            "Configuration loaded",
            extra={
                "config_path": str(self.config_path),
                "using_defaults": not self.config_path.exists(),
            },
        )
        return self._config

    def reload(self) -> NoteSyncConfig:
        """Re-read the file; keeps the previous config if the new one is invalid."""
        previous = self._config
        try:
            return self.load()
        except ConfigurationError:
            logger.error(
                "Configuration reload failed, keeping previous configuration",
                extra={"config_path": str(self.config_path)},
            )
            self._config = previous
            raise

    def save(self, config: NoteSyncConfig) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        data = config.model_dump(mode="json")
        with open(self.config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        self._config = config

    def validate(self, config_path: Optional[Path] = None) -> List[str]:
        """Validate a configuration file without keeping it.

        Returns:
            List of validation errors (empty if valid)
        """
        path = config_path or self.config_path
        if not path.exists():
            return [f"Configuration file not found: {path}"]

        errors: List[str] = []
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            NoteSyncConfig(**data)
        except ValidationError as exc:
            for error in exc.errors():
                loc = ".".join(str(part) for part in error["loc"])
                errors.append(f"{loc}: {error['msg']}")
        except (yaml.YAMLError, TypeError) as exc:
            errors.append(f"Failed to load configuration: {exc}")
        return errors


__all__ = [
    "WorkspaceConfig",
    "ApiConfig",
    "BulkConfig",
    "OverpassConfig",
    "TicketConfig",
    "RetryConfig",
    "DaemonConfig",
    "VerificationConfig",
    "NoteSyncConfig",
    "ConfigurationManager",
]
