# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
resticops Builder - Functional builder pattern for settings.

This module provides pure functions for building Settings objects.
Each function takes a settings dict and returns a new dict with the
modification applied (immutable updates).
"""

from pathlib import Path
from typing import Any, Callable, Dict, List

from resticops.config import DatabaseConfig, DbDriver, RetentionPolicy, Settings


# Type alias for builder functions
SettingsDict = Dict[str, Any]
BuilderFunc = Callable[[SettingsDict], SettingsDict]


def create_empty_settings() -> SettingsDict:
    """
    Create an initial empty settings dictionary.

    Returns:
        Dict with default values for all settings fields
    """
    return {
        "project_root": None,
        "restic_repository": None,
        "restic_password": None,
        "endpoint": None,
        "bucket": None,
        "prefix": None,
        "access_key": None,
        "secret_key": None,
        "include_paths": [],
        "exclude_paths": [],
        "retention": RetentionPolicy(),
        "restic_binary": "restic",
        "cache_dir": None,
        "work_dir": None,
        "state_db_path": Path("./resticops.db"),
        "app_name": "app",
        "app_env": "production",
        "php_binary": "php",
        "connections": {},
        "default_connection": "default",
        "preserve_tables": ["backup_runs", "backup_settings"],
        "exclude_from_dumps": ["backup_runs", "backup_settings"],
        "timeout": 3600,
    }


def with_project_root(settings: SettingsDict, project_root: Path | str) -> SettingsDict:
    """
    Set the project tree that is backed up and restored.

    Args:
        settings: Current settings dictionary
        project_root: Absolute path of the live project

    Returns:
        New settings dictionary with project_root set
    """
    return {**settings, "project_root": Path(project_root)}


def with_repository(
    settings: SettingsDict,
    repository: str,
    password: str,
) -> SettingsDict:
    """
    Point restic at an explicit repository.

    Args:
        settings: Current settings dictionary
        repository: Restic repository string (local path, s3:..., rest:...)
        password: Repository password

    Returns:
        New settings dictionary with repository set
    """
    return {**settings, "restic_repository": repository, "restic_password": password}


def with_s3_storage(
    settings: SettingsDict,
    endpoint: str,
    bucket: str,
    access_key: str,
    secret_key: str,
    prefix: str | None = None,
) -> SettingsDict:
    """
    Build the repository from S3-compatible object storage details.

    The repository resolves to ``s3:<endpoint>/<bucket>[/<prefix>]`` unless
    an explicit restic_repository is also set.

    Args:
        settings: Current settings dictionary
        endpoint: Storage endpoint URL
        bucket: Bucket name
        access_key: Access key id
        secret_key: Secret access key
        prefix: Optional path inside the bucket

    Returns:
        New settings dictionary with object storage set
    """
    return {
        **settings,
        "endpoint": endpoint,
        "bucket": bucket,
        "prefix": prefix,
        "access_key": access_key,
        "secret_key": secret_key,
    }


def include_paths(settings: SettingsDict, paths: List[str]) -> SettingsDict:
    """Add paths to back up (default: the whole project root)."""
    return {**settings, "include_paths": list(settings["include_paths"]) + paths}


def exclude_paths(settings: SettingsDict, paths: List[str]) -> SettingsDict:
    """Add restic exclude patterns, also stripped from exports."""
    return {**settings, "exclude_paths": list(settings["exclude_paths"]) + paths}


def with_retention(settings: SettingsDict, **counts: int | None) -> SettingsDict:
    """
    Set the snapshot retention policy.

    Args:
        settings: Current settings dictionary
        **counts: keep_last / keep_daily / keep_weekly / keep_monthly / keep_yearly

    Returns:
        New settings dictionary with retention set
    """
    for key, value in counts.items():
        if value is not None and value < 0:
            raise ValueError(f"{key} must be >= 0, got {value}")
    policy = RetentionPolicy(**{
        "keep_last": None,
        "keep_daily": None,
        "keep_weekly": None,
        "keep_monthly": None,
        "keep_yearly": None,
        **counts,
    })
    return {**settings, "retention": policy}


def with_database(
    settings: SettingsDict,
    driver: DbDriver | str,
    database: str,
    *,
    name: str = "default",
    **options: Any,
) -> SettingsDict:
    """
    Register an application database connection.

    Args:
        settings: Current settings dictionary
        driver: 'mysql', 'mariadb', 'pgsql' or 'sqlite'
        database: Database name (file path for sqlite)
        name: Connection name used by --connection
        **options: host, port, username, password, unix_socket, prefix

    Returns:
        New settings dictionary with the connection added
    """
    if isinstance(driver, str):
        driver = DbDriver(driver)
    conn = DatabaseConfig(driver=driver, database=database, name=name, **options)
    return {**settings, "connections": {**settings["connections"], name: conn}}


def preserve_tables(settings: SettingsDict, tables: List[str]) -> SettingsDict:
    """Add tables that restore must never drop."""
    merged = list(dict.fromkeys(list(settings["preserve_tables"]) + tables))
    return {**settings, "preserve_tables": merged}


def with_app(settings: SettingsDict, name: str, env: str) -> SettingsDict:
    """Set the application name and environment used in tags and archive names."""
    return {**settings, "app_name": name, "app_env": env}


def with_state_db(settings: SettingsDict, path: Path | str) -> SettingsDict:
    """Set the SQLite file holding runs, locks and queued jobs."""
    return {**settings, "state_db_path": Path(path)}


def build_settings(settings_dict: SettingsDict) -> Settings:
    """
    Validate and build immutable Settings from a settings dictionary.

    Args:
        settings_dict: Settings dictionary built using builder functions

    Returns:
        Validated, immutable Settings instance

    Raises:
        ConfigurationError: If validation fails
    """
    if not settings_dict.get("project_root"):
        from resticops.exceptions import ConfigurationError

        raise ConfigurationError("project_root is required", missing=["project_root"])

    return Settings(**settings_dict)


def pipe(*funcs: BuilderFunc) -> BuilderFunc:
    """
    Compose multiple builder functions into a single function.

        settings = pipe(
            lambda s: with_project_root(s, "/var/www/app"),
            lambda s: with_repository(s, "/srv/restic", "secret"),
        )(create_empty_settings())

    Args:
        *funcs: Builder functions to compose

    Returns:
        A single function that applies all functions in sequence
    """

    def composed(settings: SettingsDict) -> SettingsDict:
        result = settings
        for func in funcs:
            result = func(result)
        return result

    return composed


def create_settings(
    project_root: str | Path,
    *,
    restic_repository: str | None = None,
    restic_password: str | None = None,
    retention: RetentionPolicy | Dict[str, int | None] | None = None,
    include: List[str] | None = None,
    exclude: List[str] | None = None,
    state_db_path: str | Path | None = None,
    **kwargs: Any,
) -> Settings:
    """
    Create Settings from simple parameters.

    This is the recommended user-facing API for creating settings.

    Args:
        project_root: Live project directory (required)
        restic_repository: Restic repository string
        restic_password: Restic repository password
        retention: RetentionPolicy or mapping of keep_* counts (default: daily 7, weekly 4, monthly 12)
        include: Paths to back up (default: the project root)
        exclude: Restic exclude patterns
        state_db_path: SQLite file for runs, locks and jobs
        **kwargs: Any other Settings field

    Returns:
        Validated, immutable Settings instance

    Example:
        settings = create_settings(
            "/var/www/app",
            restic_repository="s3:https://s3.example.com/backups",
            restic_password="secret",
            access_key="AKIA...",
            secret_key="...",
            retention={"keep_daily": 14},
        )
    """
    settings_dict = with_project_root(create_empty_settings(), project_root)

    if restic_repository is not None:
        settings_dict["restic_repository"] = restic_repository
    if restic_password is not None:
        settings_dict["restic_password"] = restic_password
    if isinstance(retention, RetentionPolicy):
        settings_dict["retention"] = retention
    elif retention is not None:
        settings_dict = with_retention(settings_dict, **retention)
    if include:
        settings_dict = include_paths(settings_dict, include)
    if exclude:
        settings_dict = exclude_paths(settings_dict, exclude)
    if state_db_path is not None:
        settings_dict = with_state_db(settings_dict, state_db_path)

    settings_dict.update(kwargs)
    return build_settings(settings_dict)
