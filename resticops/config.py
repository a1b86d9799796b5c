# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
resticops Configuration - Immutable settings snapshot.

Settings are frozen after creation. A pipeline reads them once at start and
treats them as a consistent snapshot for the whole run.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, List
import re


class DbDriver(str, Enum):
    """Database driver of an application connection."""

    MYSQL = "mysql"
    MARIADB = "mariadb"
    POSTGRES = "pgsql"
    SQLITE = "sqlite"


class RunType(str, Enum):
    """Kind of pipeline recorded in a run record."""

    BACKUP = "backup"
    RESTORE = "restore"
    FORGET_SNAPSHOT = "forget_snapshot"
    EXPORT_SNAPSHOT = "export_snapshot"
    EXPORT_FULL = "export_full"
    EXPORT_DELTA = "export_delta"


class RunStatus(str, Enum):
    """Lifecycle status of a run record."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RestoreScope(str, Enum):
    """What a restore replaces."""

    DB = "db"
    FILES = "files"
    BOTH = "both"

    @property
    def includes_db(self) -> bool:
        return self in (RestoreScope.DB, RestoreScope.BOTH)

    @property
    def includes_files(self) -> bool:
        return self in (RestoreScope.FILES, RestoreScope.BOTH)


class RestoreMode(str, Enum):
    """How restored files replace the live project."""

    RSYNC = "rsync"  # In-place sync, works across filesystems
    ATOMIC = "atomic"  # Two renames, same filesystem only


TRIGGERS = ("manual", "schedule", "system")

_TABLE_NAME = re.compile(r"^[A-Za-z0-9_]+$")


@dataclass(frozen=True)
class RetentionPolicy:
    """Snapshot retention counts passed to `restic forget`."""

    keep_last: int | None = None
    keep_daily: int | None = 7
    keep_weekly: int | None = 4
    keep_monthly: int | None = 12
    keep_yearly: int | None = None

    def as_flags(self) -> Dict[str, int]:
        """Return only the counts that are set, keyed by policy name."""
        values = {
            "keep_last": self.keep_last,
            "keep_daily": self.keep_daily,
            "keep_weekly": self.keep_weekly,
            "keep_monthly": self.keep_monthly,
            "keep_yearly": self.keep_yearly,
        }
        return {key: value for key, value in values.items() if value is not None}

    def is_empty(self) -> bool:
        return not self.as_flags()


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection details of one application database."""

    driver: DbDriver
    database: str
    name: str = "default"
    host: str | None = None
    port: int | None = None
    username: str | None = None
    password: str | None = None
    unix_socket: str | None = None
    prefix: str | None = None


def _validate_table_names(tables: List[str]) -> List[str]:
    """Return table names that are not plain identifiers."""
    return [t for t in tables if not _TABLE_NAME.match(t or "")]


@dataclass(frozen=True)
class Settings:
    """
    Immutable settings snapshot for all pipelines.

    The repository is either given directly (restic_repository) or built
    from endpoint/bucket/prefix. Secrets listed here are redacted from all
    captured output before it is persisted.
    """

    # Project tree being backed up and restored
    project_root: Path

    # Restic repository and credentials
    restic_repository: str | None = None
    restic_password: str | None = None
    endpoint: str | None = None
    bucket: str | None = None
    prefix: str | None = None
    access_key: str | None = None
    secret_key: str | None = None

    # Backup path selection (relative to project_root unless absolute)
    include_paths: List[str] = field(default_factory=list)
    exclude_paths: List[str] = field(default_factory=list)

    retention: RetentionPolicy = field(default_factory=RetentionPolicy)

    # Restic binary and its cache directory
    restic_binary: str = "restic"
    cache_dir: Path | None = None

    # Scratch area for dumps and exports (default: <project_root>/storage/app/_backup)
    work_dir: Path | None = None

    # SQLite database holding runs, locks and queued jobs
    state_db_path: Path = field(default_factory=lambda: Path("./resticops.db"))

    # Application identity used in tags and archive names
    app_name: str = "app"
    app_env: str = "production"

    # Artisan runner used for maintenance mode and post-restore hooks
    php_binary: str = "php"

    # Application database connections keyed by name
    connections: Dict[str, DatabaseConfig] = field(default_factory=dict)
    default_connection: str = "default"

    # Tables never dropped on restore, and tables left out of dumps
    preserve_tables: List[str] = field(
        default_factory=lambda: ["backup_runs", "backup_settings"]
    )
    exclude_from_dumps: List[str] = field(
        default_factory=lambda: ["backup_runs", "backup_settings"]
    )

    # Default subprocess timeout in seconds
    timeout: int = 3600

    def __post_init__(self) -> None:
        """Validate settings after creation."""
        errors: List[str] = []

        if not str(self.project_root).strip():
            errors.append("project_root must not be empty")

        for key, value in self.retention.as_flags().items():
            if value < 0:
                errors.append(f"retention.{key} must be >= 0, got {value}")

        if self.timeout < 1:
            errors.append(f"timeout must be >= 1, got {self.timeout}")

        bad = _validate_table_names(list(self.preserve_tables) + list(self.exclude_from_dumps))
        if bad:
            errors.append(f"Invalid table names: {', '.join(sorted(set(bad)))}")

        for name, conn in self.connections.items():
            if not conn.database:
                errors.append(f"connections.{name}.database must not be empty")

        if errors:
            from resticops.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def backup_dir(self) -> Path:
        """Directory holding dumps, exports and scratch trees."""
        if self.work_dir is not None:
            return Path(self.work_dir)
        return Path(self.project_root) / "storage" / "app" / "_backup"

    @property
    def exports_dir(self) -> Path:
        return self.backup_dir / "exports"

    @property
    def secrets(self) -> List[str]:
        """Configured secret values, in redaction order."""
        values = [self.access_key, self.secret_key, self.restic_password]
        return [v.strip() for v in values if v and v.strip()]

    def connection(self, name: str | None = None) -> DatabaseConfig:
        """
        Look up a database connection by name.

        Args:
            name: Connection name (default: default_connection)

        Returns:
            The matching DatabaseConfig

        Raises:
            ConfigurationError: If no such connection is configured
        """
        key = name or self.default_connection
        conn = self.connections.get(key)
        if conn is None:
            from resticops.exceptions import ConfigurationError

            raise ConfigurationError(
                f"Database connection [{key}] not found.",
                missing=["connection"],
            )
        return conn

    def with_updates(self, **kwargs) -> "Settings":
        """
        Create new settings with updated values.

        Since settings are frozen, this creates a new instance.
        """
        return replace(self, **kwargs)
