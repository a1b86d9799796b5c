# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based settings helpers and retention profiles.

These helpers are small, convenient wrappers around create_settings() and
Settings.with_updates(). They make it easy to:

- Build settings from environment variables (the same names a Laravel
  project already exports: APP_*, DB_*)
- Apply ready-made retention profiles
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List

from resticops.builder import create_settings
from resticops.config import DatabaseConfig, DbDriver, RetentionPolicy, Settings
from resticops.errors import (
    explain_invalid_db_driver_env,
    explain_invalid_int_env,
    explain_missing_db_database_env,
    explain_missing_project_root_env,
)
from resticops.exceptions import ConfigurationError

_DRIVER_ALIASES = {
    "postgres": DbDriver.POSTGRES,
    "postgresql": DbDriver.POSTGRES,
}


def _parse_int(name: str, value: str | None, default: int | None) -> int | None:
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_int_env(name, value)) from exc
    if parsed < 0:
        raise ConfigurationError(explain_invalid_int_env(name, value))
    return parsed


def _parse_list(value: str | None) -> List[str]:
    if not value:
        return []
    return [p.strip() for p in value.split(",") if p.strip()]


def _parse_optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _parse_driver(value: str) -> DbDriver:
    lower = value.strip().lower()
    if lower in _DRIVER_ALIASES:
        return _DRIVER_ALIASES[lower]
    try:
        return DbDriver(lower)
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_db_driver_env(value)) from exc


def _parse_retention() -> RetentionPolicy:
    defaults = RetentionPolicy()
    names = ("keep_last", "keep_daily", "keep_weekly", "keep_monthly", "keep_yearly")
    values = {}
    for name in names:
        env_name = f"RESTICOPS_{name.upper()}"
        values[name] = _parse_int(env_name, os.getenv(env_name), getattr(defaults, name))
    return RetentionPolicy(**values)


def _parse_connections() -> Dict[str, DatabaseConfig]:
    """Build the default connection from Laravel-style DB_* variables."""

    driver_str = _parse_optional(os.getenv("DB_CONNECTION"))
    if not driver_str:
        return {}

    database = _parse_optional(os.getenv("DB_DATABASE"))
    if not database:
        raise ConfigurationError(explain_missing_db_database_env())

    conn = DatabaseConfig(
        driver=_parse_driver(driver_str),
        database=database,
        name="default",
        host=_parse_optional(os.getenv("DB_HOST")),
        port=_parse_int("DB_PORT", os.getenv("DB_PORT"), None),
        username=_parse_optional(os.getenv("DB_USERNAME")),
        password=_parse_optional(os.getenv("DB_PASSWORD")),
        unix_socket=_parse_optional(os.getenv("DB_SOCKET")),
        prefix=_parse_optional(os.getenv("DB_PREFIX")),
    )
    return {"default": conn}


def create_settings_from_env() -> Settings:
    """
    Create Settings from environment variables.

    Required:
        - RESTICOPS_PROJECT_ROOT: Live project directory

    Optional environment variables:
        - RESTIC_REPOSITORY / RESTIC_PASSWORD: Restic repository and password
        - RESTICOPS_S3_ENDPOINT, RESTICOPS_S3_BUCKET, RESTICOPS_S3_PREFIX:
          Build an s3: repository when RESTIC_REPOSITORY is unset
        - AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY: Object storage credentials
        - RESTIC_BINARY: restic executable (default: restic)
        - RESTICOPS_CACHE_DIR: restic --cache-dir
        - RESTICOPS_WORK_DIR: Scratch area (default: <root>/storage/app/_backup)
        - RESTICOPS_STATE_DB: SQLite file for runs, locks, jobs (default: ./resticops.db)
        - RESTICOPS_INCLUDE / RESTICOPS_EXCLUDE: Comma-separated path lists
        - RESTICOPS_KEEP_LAST|DAILY|WEEKLY|MONTHLY|YEARLY: Retention counts
        - RESTICOPS_PRESERVE_TABLES: Extra tables never dropped on restore
        - RESTICOPS_TIMEOUT: Subprocess timeout in seconds (default: 3600)
        - RESTICOPS_PHP_BINARY: PHP executable for artisan (default: php)
        - APP_NAME / APP_ENV: Application identity (default: app / production)
        - DB_CONNECTION, DB_HOST, DB_PORT, DB_DATABASE, DB_USERNAME,
          DB_PASSWORD, DB_SOCKET, DB_PREFIX: Default database connection
    """

    project_root = _parse_optional(os.getenv("RESTICOPS_PROJECT_ROOT"))
    if not project_root:
        raise ConfigurationError(explain_missing_project_root_env(), missing=["project_root"])

    cache_dir = _parse_optional(os.getenv("RESTICOPS_CACHE_DIR"))
    work_dir = _parse_optional(os.getenv("RESTICOPS_WORK_DIR"))
    preserve = ["backup_runs", "backup_settings"]
    for table in _parse_list(os.getenv("RESTICOPS_PRESERVE_TABLES")):
        if table not in preserve:
            preserve.append(table)

    return create_settings(
        project_root,
        restic_repository=_parse_optional(os.getenv("RESTIC_REPOSITORY")),
        restic_password=_parse_optional(os.getenv("RESTIC_PASSWORD")),
        include=_parse_list(os.getenv("RESTICOPS_INCLUDE")),
        exclude=_parse_list(os.getenv("RESTICOPS_EXCLUDE")),
        state_db_path=os.getenv("RESTICOPS_STATE_DB", "./resticops.db"),
        endpoint=_parse_optional(os.getenv("RESTICOPS_S3_ENDPOINT")),
        bucket=_parse_optional(os.getenv("RESTICOPS_S3_BUCKET")),
        prefix=_parse_optional(os.getenv("RESTICOPS_S3_PREFIX")),
        access_key=_parse_optional(os.getenv("AWS_ACCESS_KEY_ID")),
        secret_key=_parse_optional(os.getenv("AWS_SECRET_ACCESS_KEY")),
        retention=_parse_retention(),
        restic_binary=os.getenv("RESTIC_BINARY") or "restic",
        cache_dir=Path(cache_dir) if cache_dir else None,
        work_dir=Path(work_dir) if work_dir else None,
        app_name=os.getenv("APP_NAME") or "app",
        app_env=os.getenv("APP_ENV") or "production",
        php_binary=os.getenv("RESTICOPS_PHP_BINARY") or "php",
        connections=_parse_connections(),
        preserve_tables=preserve,
        timeout=_parse_int("RESTICOPS_TIMEOUT", os.getenv("RESTICOPS_TIMEOUT"), 3600),
    )


# ============================================================================
# Profiles
# ============================================================================

def compliance_retention(settings: Settings) -> Settings:
    """
    Keep snapshots long enough for audit requests.

    - At least 30 daily snapshots
    - At least 24 monthly snapshots
    - At least 7 yearly snapshots
    """

    current = settings.retention
    return settings.with_updates(
        retention=RetentionPolicy(
            keep_last=current.keep_last,
            keep_daily=max(current.keep_daily or 0, 30),
            keep_weekly=current.keep_weekly,
            keep_monthly=max(current.keep_monthly or 0, 24),
            keep_yearly=max(current.keep_yearly or 0, 7),
        )
    )


def lean_retention(settings: Settings) -> Settings:
    """
    Keep repository growth small for low-traffic projects.

    - 7 daily and 4 weekly snapshots, nothing older
    """

    return settings.with_updates(
        retention=RetentionPolicy(
            keep_last=None,
            keep_daily=7,
            keep_weekly=4,
            keep_monthly=None,
            keep_yearly=None,
        )
    )
