# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for resticops.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""


def explain_missing_project_root_env() -> str:
    """
    Explain that the project root environment variable is missing.
    """

    return (
        "Project root is not configured. "
        "Set the RESTICOPS_PROJECT_ROOT environment variable or pass project_root=... to create_settings()."
    )


def explain_invalid_int_env(name: str, value: str | None) -> str:
    """
    Explain that an integer environment variable is invalid.
    """

    return f"Invalid {name} value: {value!r}. It must be a non-negative integer."


def explain_invalid_db_driver_env(value: str | None) -> str:
    """
    Explain that DB_CONNECTION names an unsupported driver.
    """

    return (
        f"Invalid DB_CONNECTION value: {value!r}. "
        "Expected one of: 'mysql', 'mariadb', 'pgsql' (or 'postgres'), 'sqlite'."
    )


def explain_missing_db_database_env() -> str:
    """
    Explain that DB_DATABASE is required once DB_CONNECTION is set.
    """

    return (
        "DB_CONNECTION is set but DB_DATABASE is empty. "
        "Set DB_DATABASE to the database name (or the file path for sqlite)."
    )


def explain_missing_restic_settings(missing: list) -> str:
    """
    Explain which restic settings must be filled in.
    """

    return (
        "Restic configuration is incomplete. Missing: "
        + ", ".join(missing)
        + ". Set RESTIC_REPOSITORY (or RESTICOPS_S3_ENDPOINT and RESTICOPS_S3_BUCKET) "
        "and RESTIC_PASSWORD, plus AWS credentials for S3 repositories."
    )
