# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for full and snapshot exports and the snapshot helpers they share.
"""

import json
import tarfile
from datetime import datetime, UTC
from pathlib import Path

import aiosqlite
import pytest

from conftest import OLDER_SNAPSHOT_ID, SNAPSHOT_ID, make_result
from resticops.exceptions import ConfigurationError, PipelineError
from resticops.pipelines.archive import expires_at_for, find_by_id, normalize_snapshots, resolve_latest
from resticops.pipelines.export_full import run_full_export, run_snapshot_export
from resticops.queue import list_jobs
from resticops.runs import get_baseline, get_run, list_runs


def _archive_names(archive: Path) -> set:
    with tarfile.open(archive, "r:gz") as tar:
        return set(tar.getnames())


# ============================================================================
# Snapshot helpers
# ============================================================================

def test_latest_snapshot_uses_nanosecond_times(snapshots):
    normalized = normalize_snapshots(snapshots + [{"id": ""}, "junk"])

    assert [s["id"] for s in normalized] == [OLDER_SNAPSHOT_ID, SNAPSHOT_ID]
    assert resolve_latest(normalized)["id"] == SNAPSHOT_ID
    assert resolve_latest(list(reversed(normalized)))["id"] == SNAPSHOT_ID


def test_find_by_id_prefers_exact_match(snapshots):
    normalized = normalize_snapshots(snapshots)

    assert find_by_id(normalized, SNAPSHOT_ID[:8])["id"] == SNAPSHOT_ID
    assert find_by_id(normalized, OLDER_SNAPSHOT_ID[:5])["id"] == OLDER_SNAPSHOT_ID
    assert find_by_id(normalized, "  ") is None
    assert find_by_id(normalized, "ffff") is None


def test_archives_are_kept_at_least_one_hour():
    now = datetime(2026, 3, 2, 2, 0, tzinfo=UTC)
    assert (expires_at_for(0, now) - now).total_seconds() == 3600
    assert (expires_at_for(48, now) - now).total_seconds() == 48 * 3600


# ============================================================================
# Full export
# ============================================================================

@pytest.mark.asyncio
async def test_full_export_of_latest_snapshot(settings, ops_state, restic):
    export_settings = settings.with_updates(exclude_paths=["vendor", "storage/framework"])

    run_id = await run_full_export(export_settings, ops_state, keep_hours=6)

    async with aiosqlite.connect(ops_state["state_db_path"]) as db:
        record = await get_run(db, run_id)
        baseline = await get_baseline(db)

    meta = record["meta"]
    export = meta["export"]
    assert record["status"] == "success"
    assert meta["snapshot_id"] == SNAPSHOT_ID
    assert export["baseline_snapshot_id"] == SNAPSHOT_ID
    assert export["include_env"] is False
    assert export["excluded_paths"] == ["vendor", "storage/framework"]
    assert baseline["baseline_snapshot_id"] == SNAPSHOT_ID
    assert restic.restore.await_args.args[0] == SNAPSHOT_ID

    archive = Path(export["archive_path"])
    top = archive.name[: -len(".tar.gz")]
    names = _archive_names(archive)
    assert top.startswith("app-production-dr-full-4f9c2a17-")
    assert f"{top}/public/index.php" in names
    assert f"{top}/.env" not in names
    assert f"{top}/README.txt" in names
    assert f"{top}/TOOLS/restore.sh" in names
    assert not any(name.startswith(f"{top}/vendor") for name in names)
    assert export["archive_size"] == archive.stat().st_size
    assert not Path(export["work_dir"]).exists()


@pytest.mark.asyncio
async def test_full_export_keeps_env_on_request(settings, ops_state):
    run_id = await run_full_export(settings, ops_state, snapshot_id=OLDER_SNAPSHOT_ID, include_env=True)

    async with aiosqlite.connect(ops_state["state_db_path"]) as db:
        record = await get_run(db, run_id)

    archive = Path(record["meta"]["export"]["archive_path"])
    assert "-0a7d3e91-" in archive.name
    assert any(name.endswith("/.env") for name in _archive_names(archive))


@pytest.mark.asyncio
async def test_full_export_schedules_archive_cleanup(settings, ops_state):
    ops_state["queue_enabled"] = True

    run_id = await run_full_export(settings, ops_state)

    async with aiosqlite.connect(ops_state["state_db_path"]) as db:
        record = await get_run(db, run_id)
        [job] = await list_jobs(db)

    assert record["meta"]["export"]["cleanup_scheduled"] is True
    assert job["name"] == "cleanup_export_archive"
    assert job["payload"] == {"run_id": run_id}


@pytest.mark.asyncio
async def test_failed_restore_leaves_no_archive(settings, ops_state, restic):
    restic.restore_exit_code = 1

    with pytest.raises(PipelineError, match="Restic restore failed."):
        await run_full_export(settings, ops_state)

    async with aiosqlite.connect(ops_state["state_db_path"]) as db:
        [record] = await list_runs(db)
        baseline = await get_baseline(db)

    assert record["status"] == "failed"
    assert record["meta"]["step"] == "restic_restore"
    assert baseline is None
    assert not Path(record["meta"]["export"]["archive_path"]).exists()


@pytest.mark.asyncio
async def test_empty_repository(settings, ops_state, restic):
    restic.snapshots.return_value = make_result(stdout="[]", parsed_json=[])

    with pytest.raises(PipelineError, match="No snapshots found"):
        await run_full_export(settings, ops_state)


# ============================================================================
# Snapshot export
# ============================================================================

@pytest.mark.asyncio
async def test_snapshot_export(settings, ops_state, project_root: Path):
    run_id = await run_snapshot_export(settings, ops_state, SNAPSHOT_ID[:8])

    async with aiosqlite.connect(ops_state["state_db_path"]) as db:
        record = await get_run(db, run_id)
        baseline = await get_baseline(db)

    export = record["meta"]["export"]
    archive = Path(export["archive_path"])
    top = archive.name[: -len(".tar.gz")]
    names = _archive_names(archive)

    assert record["status"] == "success"
    assert export["kind"] == "snapshot"
    assert "-snapshot-4f9c2a17-" in top
    assert f"{top}/.env" not in names
    assert f"{top}/README.txt" not in names
    assert baseline is None

    with tarfile.open(archive, "r:gz") as tar:
        manifest = json.load(tar.extractfile(f"{top}/_snapshot_export.json"))

    assert manifest["snapshot_id"] == SNAPSHOT_ID
    assert manifest["project_root"] == str(project_root)
    assert manifest["include_env"] is False


@pytest.mark.asyncio
async def test_snapshot_export_requires_id(settings, ops_state):
    with pytest.raises(ConfigurationError):
        await run_snapshot_export(settings, ops_state, "  ")

    async with aiosqlite.connect(ops_state["state_db_path"]) as db:
        assert await list_runs(db) == []


@pytest.mark.asyncio
async def test_snapshot_export_of_unknown_id(settings, ops_state):
    with pytest.raises(PipelineError, match="Snapshot was not found"):
        await run_snapshot_export(settings, ops_state, "ffffffff")

    async with aiosqlite.connect(ops_state["state_db_path"]) as db:
        [record] = await list_runs(db)
    assert record["status"] == "failed"
