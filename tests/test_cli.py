# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for the operator CLI.

Commands read their settings from the environment, so every test points
RESTICOPS_* variables into a temporary directory.
"""

import asyncio
from pathlib import Path

import aiosqlite
import pytest
from typer.testing import CliRunner

from conftest import TEST_PASSWORD
from resticops.cli import app, parse_tags
from resticops.core import init_state_db
from resticops.lock import OperationLock
from resticops.queue import list_jobs

runner = CliRunner()

ENV_NAMES = (
    "DB_CONNECTION",
    "DB_DATABASE",
    "RESTICOPS_WORK_DIR",
    "RESTICOPS_CACHE_DIR",
    "RESTICOPS_S3_ENDPOINT",
    "RESTICOPS_S3_BUCKET",
    "RESTICOPS_TIMEOUT",
)


@pytest.fixture
def cli_env(monkeypatch, temp_dir: Path, project_root: Path) -> Path:
    """Point the CLI at a temporary project and state database."""
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)

    state_db = temp_dir / "state" / "cli.db"
    monkeypatch.setenv("RESTICOPS_PROJECT_ROOT", str(project_root))
    monkeypatch.setenv("RESTIC_REPOSITORY", str(temp_dir / "repo"))
    monkeypatch.setenv("RESTIC_PASSWORD", TEST_PASSWORD)
    monkeypatch.setenv("RESTICOPS_STATE_DB", str(state_db))
    return state_db


def _jobs(state_db: Path):
    async def _list():
        async with aiosqlite.connect(state_db) as db:
            return await list_jobs(db)

    return asyncio.run(_list())


def _hold_lock(state_db: Path) -> None:
    async def _acquire():
        await init_state_db(state_db)
        handle = await OperationLock(state_db).acquire("backup", 600, block_seconds=0)
        assert handle is not None

    asyncio.run(_acquire())


# ============================================================================
# Backup
# ============================================================================

def test_parse_tags():
    assert parse_tags(None) == []
    assert parse_tags(" nightly, ,pre-deploy ") == ["nightly", "pre-deploy"]


def test_run_backup_dispatches_job(cli_env: Path):
    result = runner.invoke(app, ["run-backup", "--tags", "nightly,manual-check", "--trigger", "schedule"])

    assert result.exit_code == 0, result.output
    assert "Backup job dispatched to queue." in result.output

    [job] = _jobs(cli_env)
    assert job["name"] == "backup"
    assert job["payload"]["tags"] == ["nightly", "manual-check"]
    assert job["payload"]["trigger"] == "schedule"


def test_missing_project_root_exits(monkeypatch):
    monkeypatch.delenv("RESTICOPS_PROJECT_ROOT", raising=False)

    result = runner.invoke(app, ["run-backup"])

    assert result.exit_code == 1
    assert "RESTICOPS_PROJECT_ROOT" in result.output


# ============================================================================
# Cleanup
# ============================================================================

def test_cleanup_exports_dry_run(cli_env: Path):
    result = runner.invoke(app, ["cleanup-exports", "--dry-run"])

    assert result.exit_code == 0, result.output
    assert "Cleanup completed. Removed 0 archives and 0 work directories." in result.output


def test_cleanup_rollbacks_dry_run(cli_env: Path, project_root: Path):
    rollback = project_root.parent / "app.__before_restore_20200101000000"
    rollback.mkdir()

    result = runner.invoke(app, ["cleanup-rollbacks", "--dry-run"])

    assert result.exit_code == 0, result.output
    assert f"Would remove: {rollback}" in result.output
    assert rollback.is_dir()


# ============================================================================
# Lock
# ============================================================================

def test_unlock_without_holder(cli_env: Path):
    result = runner.invoke(app, ["unlock", "--force"])

    assert result.exit_code == 0, result.output
    assert "Lock info not found." in result.output
    assert "Lock released." in result.output


def test_unlock_held_lock_after_confirmation(cli_env: Path):
    _hold_lock(cli_env)

    cancelled = runner.invoke(app, ["unlock"], input="no\n")
    assert cancelled.exit_code == 1
    assert "type: backup" in cancelled.output
    assert "Unlock cancelled." in cancelled.output

    released = runner.invoke(app, ["unlock"], input="UNLOCK\n")
    assert released.exit_code == 0, released.output
    assert "Lock released." in released.output

    assert asyncio.run(OperationLock(cli_env).get_info()) is None


def test_unlock_skips_fresh_lock_in_stale_mode(cli_env: Path):
    _hold_lock(cli_env)

    result = runner.invoke(app, ["unlock", "--stale", "--force"])

    assert result.exit_code == 0, result.output
    assert "Lock is not stale. Skipping unlock." in result.output
    assert asyncio.run(OperationLock(cli_env).get_info()) is not None


# ============================================================================
# Worker
# ============================================================================

def test_work_once_with_empty_queue(cli_env: Path):
    result = runner.invoke(app, ["work", "--once"])

    assert result.exit_code == 0, result.output
    assert "Processed 0 jobs." in result.output
