"""Configuration management for the workstation daemon."""

from __future__ import annotations

import logging
import logging.handlers
import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)

SKIP_PERMISSIONS_FLAG = "--dangerously-skip-permissions"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def _split_paths(value: Any, default: tuple[Path, ...]) -> tuple[Path, ...]:
    if value is None or value == "":
        return default
    if isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    elif isinstance(value, (str, Path)):
        items = [part.strip() for part in str(value).split(os.pathsep) if part.strip()]
    else:
        raise TypeError("Path lists must be a sequence of paths or a path-separated string")
    return tuple(Path(item).expanduser() for item in items) or default


def _default_allowed_roots() -> tuple[Path, ...]:
    return (Path.home(), Path("/tmp"), Path("/opt"))


class WorkstationSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    home_dir: Path = Field(
        default_factory=lambda: Path.home() / ".workstation",
        validation_alias="WORKSTATION_HOME",
    )
    socket_path: Path = Field(
        default=Path("/tmp/workstation.sock"), validation_alias="WORKSTATION_SOCKET_PATH"
    )
    agent_command: str = Field(default="claude", validation_alias="WORKSTATION_AGENT_COMMAND")
    agent_path: str | None = Field(default=None, validation_alias="WORKSTATION_AGENT_PATH")
    log_level: str = Field(default="INFO", validation_alias="WORKSTATION_LOG_LEVEL")
    log_file: Path | None = Field(default=None, validation_alias="WORKSTATION_LOG_FILE")
    scan_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default_factory=lambda: (Path.home() / "projects",),
        validation_alias="WORKSTATION_SCAN_PATHS",
    )
    allowed_roots: Annotated[tuple[Path, ...], NoDecode] = Field(
        default_factory=_default_allowed_roots,
        validation_alias="WORKSTATION_ALLOWED_ROOTS",
    )
    discovery_max_depth: int = Field(default=3, validation_alias="WORKSTATION_DISCOVERY_MAX_DEPTH")
    ping_timeout: float = Field(default=1.0, validation_alias="WORKSTATION_PING_TIMEOUT")
    event_timeout: float = Field(default=1.0, validation_alias="WORKSTATION_EVENT_TIMEOUT")
    ready_timeout: float = Field(default=30.0, validation_alias="WORKSTATION_READY_TIMEOUT")
    socket_health_interval: float = Field(
        default=10.0, validation_alias="WORKSTATION_SOCKET_HEALTH_INTERVAL"
    )
    stale_checkpoint_days: int = Field(
        default=30, validation_alias="WORKSTATION_STALE_CHECKPOINT_DAYS"
    )
    subscriber_queue_size: int = Field(
        default=1000, validation_alias="WORKSTATION_SUBSCRIBER_QUEUE_SIZE"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "WORKSTATION_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("home_dir", "socket_path", "log_file")
    @classmethod
    def _expand_path(cls, value: Path | None) -> Path | None:
        if value is None:
            return None
        return Path(value).expanduser()

    @field_validator("scan_paths", mode="before")
    @classmethod
    def _parse_scan_paths(cls, value):
        return _split_paths(value, (Path.home() / "projects",))

    @field_validator("allowed_roots", mode="before")
    @classmethod
    def _parse_allowed_roots(cls, value):
        return _split_paths(value, _default_allowed_roots())

    @field_validator("discovery_max_depth")
    @classmethod
    def _validate_depth(cls, value: int) -> int:
        if value < 0:
            raise ValueError("WORKSTATION_DISCOVERY_MAX_DEPTH must be >= 0")
        return value

    @field_validator("ping_timeout", "event_timeout", "ready_timeout", "socket_health_interval")
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Timeouts and intervals must be > 0")
        return value

    @property
    def descriptor_path(self) -> Path:
        return self.home_dir / "daemon.json"

    @property
    def checkpoint_dir(self) -> Path:
        return self.home_dir / "sessions"

    @property
    def projects_file(self) -> Path:
        return self.home_dir / "projects.yaml"

    @property
    def config_file(self) -> Path:
        return self.home_dir / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> WorkstationSettings:
    """Return cached settings instance."""

    return WorkstationSettings()


def configure_logging(level: str, log_file: Path | None = None) -> None:
    """Configure root logging for the daemon and its command-line tools."""

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
            )
        )
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


class StationConfig(BaseModel):
    """User-editable toggles stored in config.yaml."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    skip_permissions: bool = Field(default=False, alias="skipPermissions")


def load_station_config(path: Path) -> StationConfig:
    """Read config.yaml from disk; a missing or unreadable file yields defaults."""

    if not path.exists():
        return StationConfig()
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to read config file", extra={"path": str(path), "error": str(exc)})
        return StationConfig()
    if not isinstance(document, dict):
        return StationConfig()
    try:
        return StationConfig.model_validate(document)
    except ValidationError as exc:
        logger.warning("Invalid config file", extra={"path": str(path), "error": str(exc)})
        return StationConfig()


def save_station_config(path: Path, config: StationConfig) -> None:
    """Write toggles back to config.yaml, keeping unrelated keys intact."""

    existing: dict[str, Any] = {}
    if path.exists():
        try:
            loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
            if isinstance(loaded, dict):
                existing = loaded
        except yaml.YAMLError:
            existing = {}
    existing.update(config.model_dump(by_alias=True))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(existing, sort_keys=True), encoding="utf-8")


class RuntimeConfig:
    """Read-through cache over config.yaml, invalidated at each session creation."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._cached: StationConfig | None = None

    @property
    def path(self) -> Path:
        return self._path

    def get(self) -> StationConfig:
        if self._cached is None:
            self._cached = load_station_config(self._path)
        return self._cached

    def invalidate(self) -> None:
        self._cached = None

    def agent_flags(self) -> list[str]:
        """Return the agent CLI flags implied by the current toggles."""

        if self.get().skip_permissions:
            logger.info("skipPermissions enabled for new session")
            return [SKIP_PERMISSIONS_FLAG]
        return []


__all__ = [
    "RuntimeConfig",
    "SKIP_PERMISSIONS_FLAG",
    "StationConfig",
    "WorkstationSettings",
    "configure_logging",
    "get_settings",
    "load_station_config",
    "save_station_config",
]
