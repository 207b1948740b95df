"""
Configuration management for the launcher.

All configuration is done via environment variables - no config files inside
the container. This module provides typed configuration classes with validation.

Invariants:
    - All settings have defaults matching the container layout
    - Backups are disabled unless BACKUP_INTERVAL is set
    - When backups are enabled, RESTIC_REPOSITORY and RESTIC_PASSWORD are required
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that keep existing containers working
    - Durations go through parse_duration so "90", "90s" and "1.5m" agree
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .backup.duration import parse_duration

logger = logging.getLogger(__name__)


def parse_bool_env(value: str | None) -> bool:
    """True for "true", "1" or "yes" (case-insensitive, trimmed)."""
    if value is None:
        return False
    return value.strip().lower() in ("true", "1", "yes")


def _duration_env(name: str, default: float | None) -> float | None:
    raw = os.getenv(name, "")
    if not raw.strip():
        return default
    try:
        return parse_duration(raw)
    except ValueError as e:
        raise ValueError(f"invalid {name}: {e}") from e


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"invalid {name}: {raw!r} is not an integer")


@dataclass(frozen=True)
class BackupConfig:
    """Backup schedule configuration.

    Attributes:
        interval_seconds: Time between backups; None disables backups
        backup_on_server_start: Back up as soon as the server boots
        pause_when_no_players: Skip cycles while nobody is or was online
        prune_retention: restic forget options, e.g. "--keep-daily 7"
        timeout_seconds: Bound on waiting for the server's backup file
    """

    interval_seconds: float | None = None
    backup_on_server_start: bool = False
    pause_when_no_players: bool = False
    prune_retention: str | None = None
    timeout_seconds: float = 300.0

    @property
    def enabled(self) -> bool:
        return self.interval_seconds is not None

    @classmethod
    def from_env(cls) -> BackupConfig:
        """Load configuration from environment variables."""
        interval = _duration_env("BACKUP_INTERVAL", None)
        if interval is not None and interval <= 0:
            raise ValueError(f"BACKUP_INTERVAL must be positive, got {interval:g}s")

        return cls(
            interval_seconds=interval,
            backup_on_server_start=parse_bool_env(os.getenv("DO_BACKUP_ON_SERVER_START")),
            pause_when_no_players=parse_bool_env(os.getenv("BACKUP_PAUSE_WHEN_NO_PLAYERS")),
            prune_retention=os.getenv("BACKUP_PRUNE_RETENTION", "").strip() or None,
            timeout_seconds=_duration_env("BACKUP_TIMEOUT", 300.0) or 300.0,
        )


@dataclass(frozen=True)
class PathsConfig:
    """Filesystem layout.

    Attributes:
        gamedata_dir: Server data path (passed as --dataPath)
        staging_dir: Persistent directory snapshotted by restic
        server_binaries_dir: Directory holding VintageStoryServer.dll
    """

    gamedata_dir: str = "/gamedata"
    staging_dir: str = "/backupcache/staging"
    server_binaries_dir: str = "/serverbinaries"

    @classmethod
    def from_env(cls) -> PathsConfig:
        """Load configuration from environment variables."""
        return cls(
            gamedata_dir=os.getenv("GAMEDATA_DIR", "/gamedata"),
            staging_dir=os.getenv("STAGING_DIR", "/backupcache/staging"),
            server_binaries_dir=os.getenv("SERVER_BINARIES_DIR", "/serverbinaries"),
        )


@dataclass(frozen=True)
class ResticConfig:
    """restic configuration.

    restic itself reads RESTIC_REPOSITORY and RESTIC_PASSWORD from the
    environment; they are loaded here only so they can be validated.
    """

    repository: str | None = None
    password: str | None = field(default=None, repr=False)
    binary: str = "restic"

    @classmethod
    def from_env(cls) -> ResticConfig:
        return cls(
            repository=os.getenv("RESTIC_REPOSITORY") or None,
            password=os.getenv("RESTIC_PASSWORD") or None,
            binary=os.getenv("RESTIC_BINARY", "restic"),
        )


@dataclass(frozen=True)
class ServerConfig:
    """Dedicated server process configuration.

    Attributes:
        min_command_delay_ms: Minimum spacing between console commands
        shutdown_timeout_seconds: Grace period after /stop before killing
    """

    min_command_delay_ms: int = 100
    shutdown_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load configuration from environment variables."""
        return cls(
            min_command_delay_ms=_int_env("SERVER_COMMAND_DELAY_MS", 100),
            shutdown_timeout_seconds=_duration_env("SERVER_SHUTDOWN_TIMEOUT", 30.0) or 30.0,
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class LauncherConfig:
    """Complete launcher configuration.

    Attributes:
        backup: Backup schedule
        paths: Filesystem layout
        restic: restic repository settings
        server: Server process settings
        observability: Logging settings
    """

    backup: BackupConfig = field(default_factory=BackupConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    restic: ResticConfig = field(default_factory=ResticConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> LauncherConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            backup=BackupConfig.from_env(),
            paths=PathsConfig.from_env(),
            restic=ResticConfig.from_env(),
            server=ServerConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.backup.enabled:
            if not self.restic.repository:
                raise ValueError(
                    "BACKUP_INTERVAL is set but RESTIC_REPOSITORY is not set. "
                    "Backups require RESTIC_REPOSITORY to be configured"
                )
            if not self.restic.password:
                raise ValueError(
                    "BACKUP_INTERVAL is set but RESTIC_PASSWORD is not set. "
                    "Backups require RESTIC_PASSWORD to be configured"
                )

        if self.server.min_command_delay_ms <= 0:
            raise ValueError("SERVER_COMMAND_DELAY_MS must be positive")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.exists(self.paths.gamedata_dir):
            logger.warning(
                f"Gamedata directory does not exist: {self.paths.gamedata_dir}. "
                "The server will create it on first start."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Launcher configuration loaded",
            extra={
                "backups_enabled": self.backup.enabled,
                "backup_interval_seconds": self.backup.interval_seconds,
                "backup_on_server_start": self.backup.backup_on_server_start,
                "pause_when_no_players": self.backup.pause_when_no_players,
                "prune_retention": self.backup.prune_retention,
                "gamedata_dir": self.paths.gamedata_dir,
                "staging_dir": self.paths.staging_dir,
                "restic_repository_set": self.restic.repository is not None,
                "log_level": self.observability.log_level,
            },
        )
