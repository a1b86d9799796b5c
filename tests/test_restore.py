# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for the restore pipeline.

These tests verify:
1. Preflight - nothing is touched when a check fails
2. Cutover - atomic swaps keep the live .env and a rollback tree
3. Rollback - a failed database import puts files and data back
4. Lock - a busy lock produces a skipped run instead of waiting
"""

import gzip
import math
import shutil
import sqlite3
import zlib
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import aiosqlite
import pytest

from conftest import SNAPSHOT_ID, make_result
from resticops.config import RestoreMode, RestoreScope
from resticops.db import get_driver
from resticops.db.base import DUMP_RELATIVE_PATH
from resticops.exceptions import PipelineError
from resticops.fs import GIB
from resticops.pipelines.restore import (
    SAFETY_DUMP_NAME,
    normalize_mode,
    normalize_scope,
    preflight_space,
    required_space,
    resolve_snapshot,
    run_restore,
)
from resticops.runs import get_run, list_runs


@pytest.fixture(autouse=True)
def plenty_of_space(monkeypatch):
    monkeypatch.setattr("resticops.pipelines.restore.free_bytes", lambda path: 100 * GIB)


def _siblings(project_root: Path) -> list:
    return sorted(p.name for p in project_root.parent.iterdir())


def _sqlite_tables(path: Path) -> set:
    conn = sqlite3.connect(path)
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    finally:
        conn.close()
    return {row[0] for row in rows}


def _create_sqlite(path: Path, table: str) -> None:
    conn = sqlite3.connect(path)
    conn.execute(f"CREATE TABLE {table} (id INTEGER PRIMARY KEY)")
    conn.commit()
    conn.close()


async def _only_run(ops_state) -> dict:
    async with aiosqlite.connect(ops_state["state_db_path"]) as db:
        [record] = await list_runs(db)
    return record


# ============================================================================
# Helpers
# ============================================================================

def test_scope_and_mode_normalization():
    assert normalize_scope("database") == RestoreScope.DB
    assert normalize_scope("BOTH") == RestoreScope.BOTH
    assert normalize_scope(None) == RestoreScope.FILES
    assert normalize_scope("everything") == RestoreScope.FILES

    assert normalize_mode("ATOMIC", RestoreScope.FILES) == RestoreMode.ATOMIC
    assert normalize_mode("copy", RestoreScope.BOTH) == RestoreMode.RSYNC
    assert normalize_mode(RestoreMode.ATOMIC, RestoreScope.DB) is None


def test_required_space():
    assert required_space(None, RestoreScope.FILES) is None
    assert required_space(10 * GIB, RestoreScope.DB) == 2 * GIB
    assert required_space(GIB, RestoreScope.BOTH) == math.ceil(GIB * 1.15 + 2 * GIB)


@pytest.mark.asyncio
async def test_preflight_space_uses_restic_stats(project_root: Path, monkeypatch):
    restic = MagicMock()
    restic.stats_restore_size = AsyncMock(return_value=make_result(parsed_json={"total_size": 5 * GIB}))

    monkeypatch.setattr("resticops.pipelines.restore.free_bytes", lambda path: 10 * GIB)
    enough = await preflight_space(restic, SNAPSHOT_ID, project_root, RestoreScope.FILES, 3600)

    monkeypatch.setattr("resticops.pipelines.restore.free_bytes", lambda path: 5 * GIB)
    short = await preflight_space(restic, SNAPSHOT_ID, project_root, RestoreScope.FILES, 3600)

    assert enough["ok"] is True
    assert enough["source"] == "restic_stats"
    assert enough["expected_bytes"] == 5 * GIB
    assert short["ok"] is False
    assert short["exit_code"] == 1


@pytest.mark.asyncio
async def test_preflight_space_falls_back_to_tree_size(project_root: Path):
    restic = MagicMock()
    restic.stats_restore_size = AsyncMock(return_value=make_result(exit_code=1, stderr="unknown mode"))

    space = await preflight_space(restic, SNAPSHOT_ID, project_root, RestoreScope.FILES, 3600)

    assert space["source"] == "du"
    assert space["expected_bytes"] > 0
    assert space["stats"]["exit_code"] == 1


def test_resolve_snapshot(snapshots):
    assert resolve_snapshot(snapshots, SNAPSHOT_ID)["id"] == SNAPSHOT_ID
    assert resolve_snapshot(snapshots, SNAPSHOT_ID[:8])["short_id"] == SNAPSHOT_ID[:8]
    assert resolve_snapshot(snapshots, SNAPSHOT_ID[:12])["id"] == SNAPSHOT_ID

    with pytest.raises(PipelineError):
        resolve_snapshot(snapshots, "deadbeef")
    with pytest.raises(PipelineError):
        resolve_snapshot(snapshots, "  ")


# ============================================================================
# Successful restores
# ============================================================================

@pytest.mark.asyncio
async def test_atomic_files_restore(settings, ops_state, maintenance, project_root: Path):
    run_id = await run_restore(settings, ops_state, SNAPSHOT_ID[:8], scope="files", mode="atomic")

    assert "restored" in (project_root / "public" / "index.php").read_text()
    assert (project_root / ".env").read_text() == "APP_KEY=live\n"
    assert not (project_root / "storage" / "framework" / "views" / "compiled.php").exists()

    names = _siblings(project_root)
    rollback = [n for n in names if n.startswith("app.__before_restore_")]
    assert len(rollback) == 1
    assert "live" in (project_root.parent / rollback[0] / "public" / "index.php").read_text()
    assert not any("__restored_" in n or "__swap_" in n for n in names)

    assert maintenance.down.await_count == 2
    assert maintenance.up.await_count == 1

    async with aiosqlite.connect(ops_state["state_db_path"]) as db:
        record = await get_run(db, run_id)

    meta = record["meta"]
    assert record["status"] == "success"
    assert meta["snapshot"]["id"] == SNAPSHOT_ID
    assert meta["steps"]["env_preserve"]["exit_code"] == 0
    assert meta["restore"]["rollback_dir"] == str(project_root.parent / rollback[0])
    assert meta["restore"]["bypass_path"] == "/" + meta["restore"]["secret"]
    assert meta["cleanup"]["scheduled"] is False
    assert "rollback" not in meta
    assert await ops_state["lock"].get_info() is None


@pytest.mark.skipif(shutil.which("rsync") is None, reason="rsync not installed")
@pytest.mark.asyncio
async def test_rsync_files_restore_keeps_env(settings, ops_state, maintenance, project_root: Path):
    (project_root / "stale.txt").write_text("gone after restore")

    await run_restore(settings, ops_state, SNAPSHOT_ID, scope="files", mode="rsync")

    assert "restored" in (project_root / "public" / "index.php").read_text()
    assert (project_root / ".env").read_text() == "APP_KEY=live\n"
    assert not (project_root / "stale.txt").exists()
    assert maintenance.down.await_count == 1
    assert not any(n.startswith("app.__before_restore_") for n in _siblings(project_root))


@pytest.mark.asyncio
async def test_database_only_restore(settings, ops_state, restic, project_root: Path, temp_dir: Path):
    """Only the dump is restored; the live tree is left alone."""
    _create_sqlite(temp_dir / "app.sqlite", "live_only")
    _create_sqlite(temp_dir / "snapshot.sqlite", "from_snapshot")
    restic.tree = {
        str(DUMP_RELATIVE_PATH): gzip.compress((temp_dir / "snapshot.sqlite").read_bytes()),
        "public/index.php": "<?php echo 'restored';\n",
    }
    ops_state["driver_factory"] = get_driver

    run_id = await run_restore(settings, ops_state, SNAPSHOT_ID, scope="db")

    assert _sqlite_tables(temp_dir / "app.sqlite") == {"from_snapshot"}
    assert "live" in (project_root / "public" / "index.php").read_text()

    include = restic.restore.await_args.kwargs["include"]
    assert include == [str(project_root / DUMP_RELATIVE_PATH)]

    async with aiosqlite.connect(ops_state["state_db_path"]) as db:
        record = await get_run(db, run_id)

    assert record["status"] == "success"
    assert record["meta"]["mode"] is None
    assert record["meta"]["steps"]["cutover_db_wipe"]["dropped_tables_count"] == 1


@pytest.mark.asyncio
async def test_sqlite_import_of_corrupt_dump_fails_cleanly(settings, temp_dir: Path):
    _create_sqlite(temp_dir / "app.sqlite", "live_only")
    corrupt = temp_dir / "corrupt.sql.gz"
    corrupt.write_bytes(gzip.compress(b"")[:10] + b"\xff" * 32)

    result = await get_driver(settings.connection(), settings).import_dump(corrupt)

    assert result["exit_code"] == 1
    assert "invalid block type" in result["stderr"]
    assert _sqlite_tables(temp_dir / "app.sqlite") == {"live_only"}
    assert not (temp_dir / "app.sqlite.restoring").exists()


# ============================================================================
# Failures
# ============================================================================

@pytest.mark.asyncio
async def test_failed_import_rolls_back_files_and_database(settings, ops_state, driver, maintenance, project_root: Path):
    """Without a safety backup the database falls back to the dump in the swapped-back tree."""
    driver.import_dump.side_effect = [
        {"exit_code": 1, "stderr": "ERROR 1064 near line 1"},
        {"exit_code": 0, "stderr": ""},
    ]

    with pytest.raises(PipelineError, match="Database restore failed."):
        await run_restore(settings, ops_state, SNAPSHOT_ID, scope="both", mode="atomic", safety_backup=False)

    assert "live" in (project_root / "public" / "index.php").read_text()
    assert driver.import_dump.await_count == 2
    assert driver.import_dump.await_args_list[1].args[0] == project_root / DUMP_RELATIVE_PATH
    assert maintenance.up.await_count == 1

    record = await _only_run(ops_state)
    meta = record["meta"]
    assert record["status"] == "failed"
    assert meta["step"] == "cutover_db_import"
    assert meta["error_message"] == "Database restore failed."
    assert meta["rollback"] == {
        "attempted": True,
        "success": True,
        "db_attempted": True,
        "db_success": True,
        "db_source": "project",
    }
    assert meta["steps"]["rollback_db_restore"]["dump_source"] == "project"
    assert not any("__restored_" in n for n in _siblings(project_root))


@pytest.mark.asyncio
async def test_rollback_reimports_the_safety_dump_by_default(settings, ops_state, restic, driver):
    imported = []

    async def import_dump(dump_path, cwd=None):
        imported.append(gzip.decompress(Path(dump_path).read_bytes()))
        if len(imported) == 1:
            return {"exit_code": 1, "stderr": "ERROR 1064 near line 1"}
        return {"exit_code": 0, "stderr": ""}

    driver.import_dump.side_effect = import_dump

    with pytest.raises(PipelineError, match="Database restore failed."):
        await run_restore(settings, ops_state, SNAPSHOT_ID, scope="both", mode="atomic")

    assert imported == [b"-- restored dump\n", b"-- live dump\n"]
    assert driver.import_dump.await_args_list[1].args[0].name == SAFETY_DUMP_NAME
    assert "safety-before-restore" in restic.backup.await_args.args[1]

    meta = (await _only_run(ops_state))["meta"]
    assert meta["safety_backup"] is True
    assert meta["steps"]["safety_backup"]["exit_code"] == 0
    assert meta["rollback"]["db_success"] is True
    assert meta["rollback"]["db_source"] == "safety"


@pytest.mark.asyncio
async def test_raising_rollback_import_is_recorded(settings, ops_state, driver, maintenance):
    driver.import_dump.side_effect = [
        {"exit_code": 1, "stderr": "ERROR 1064 near line 1"},
        zlib.error("Error -3 while decompressing data: invalid stored block lengths"),
    ]

    with pytest.raises(PipelineError, match="Database restore failed."):
        await run_restore(settings, ops_state, SNAPSHOT_ID, scope="db")

    record = await _only_run(ops_state)
    meta = record["meta"]
    assert record["status"] == "failed"
    assert meta["error_message"] == "Database restore failed."
    assert meta["rollback"]["db_attempted"] is True
    assert meta["rollback"]["db_success"] is False
    assert "invalid stored block lengths" in meta["steps"]["rollback_db_restore"]["stderr"]
    assert maintenance.up.await_count == 1
    assert await ops_state["lock"].get_info() is None


@pytest.mark.asyncio
async def test_rollback_crash_keeps_the_original_failure(settings, ops_state, driver, monkeypatch):
    def broken_rollback(*args):
        raise OSError("rollback tree vanished")

    monkeypatch.setattr("resticops.pipelines.restore.attempt_rollback", broken_rollback)
    driver.import_dump.return_value = {"exit_code": 1, "stderr": "ERROR 1064 near line 1"}

    with pytest.raises(PipelineError, match="Database restore failed."):
        await run_restore(settings, ops_state, SNAPSHOT_ID, scope="both", mode="atomic")

    record = await _only_run(ops_state)
    assert record["status"] == "failed"
    assert record["meta"]["step"] == "cutover_db_import"
    assert record["meta"]["rollback_error"] == "rollback tree vanished"


@pytest.mark.asyncio
async def test_maintenance_up_failure_does_not_hide_the_restore_error(settings, ops_state, driver, maintenance):
    driver.import_dump.return_value = {"exit_code": 1, "stderr": "ERROR 1064 near line 1"}
    maintenance.up.side_effect = RuntimeError("artisan crashed")

    with pytest.raises(PipelineError, match="Database restore failed."):
        await run_restore(settings, ops_state, SNAPSHOT_ID, scope="db")

    record = await _only_run(ops_state)
    assert record["status"] == "failed"
    assert maintenance.up.await_count == 1
    assert await ops_state["lock"].get_info() is None


@pytest.mark.asyncio
async def test_filesystem_mismatch_stops_atomic_restore(settings, ops_state, restic, maintenance, monkeypatch):
    monkeypatch.setattr("resticops.pipelines.restore.same_filesystem", lambda a, b: False)

    with pytest.raises(PipelineError, match="same filesystem"):
        await run_restore(settings, ops_state, SNAPSHOT_ID, scope="files", mode="atomic")

    record = await _only_run(ops_state)
    assert record["meta"]["step"] == "preflight_fs"
    assert record["meta"]["steps"]["preflight_fs"]["same_filesystem"] is False
    assert record["meta"]["rollback"]["attempted"] is False
    restic.restore.assert_not_awaited()
    maintenance.down.assert_not_awaited()


@pytest.mark.asyncio
async def test_insufficient_space(settings, ops_state, restic, monkeypatch):
    monkeypatch.setattr("resticops.pipelines.restore.free_bytes", lambda path: GIB)

    with pytest.raises(PipelineError, match="Insufficient disk space"):
        await run_restore(settings, ops_state, SNAPSHOT_ID, scope="files")

    assert (await _only_run(ops_state))["meta"]["step"] == "preflight_space"
    restic.restore.assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_snapshot(settings, ops_state, restic):
    with pytest.raises(PipelineError, match="Snapshot was not found"):
        await run_restore(settings, ops_state, "deadbeef", scope="files")

    restic.stats_restore_size.assert_not_awaited()


@pytest.mark.asyncio
async def test_staging_validation_failure(settings, ops_state, restic, maintenance, project_root: Path):
    del restic.tree["vendor/autoload.php"]

    with pytest.raises(PipelineError, match="Staging validation failed."):
        await run_restore(settings, ops_state, SNAPSHOT_ID, scope="files", mode="atomic")

    record = await _only_run(ops_state)
    assert record["meta"]["step"] == "stage_validate"
    assert "vendor/autoload.php missing in staged project." in record["meta"]["steps"]["stage_validate"]["errors"]
    maintenance.down.assert_not_awaited()
    assert _siblings(project_root) == ["app"]
    assert "live" in (project_root / "public" / "index.php").read_text()


@pytest.mark.asyncio
async def test_busy_lock_records_a_skipped_run(settings, ops_state, restic):
    holder = await ops_state["lock"].acquire("backup", 600, block_seconds=0)

    run_id = await run_restore(settings, ops_state, SNAPSHOT_ID, scope="db")

    async with aiosqlite.connect(ops_state["state_db_path"]) as db:
        record = await get_run(db, run_id)

    assert record["status"] == "skipped"
    assert record["meta"]["reason"] == "lock_unavailable"
    assert record["meta"]["scope"] == "db"
    restic.version.assert_not_awaited()
    await holder.release()
