# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for the runs store and the delta baseline.
"""

from pathlib import Path

import aiosqlite
import pytest

from resticops.config import RunStatus, RunType
from resticops.exceptions import StoreError
from resticops.runs import (
    create_run,
    finish_run,
    get_baseline,
    get_run,
    list_runs,
    merge_run_meta,
    record_skipped_run,
    set_baseline,
    update_run_meta,
)


@pytest.mark.asyncio
async def test_run_lifecycle(state_db_path: Path):
    async with aiosqlite.connect(state_db_path) as db:
        run_id = await create_run(db, RunType.BACKUP, {"trigger": "manual"})

        record = await get_run(db, run_id)
        assert record["type"] == "backup"
        assert record["status"] == "running"
        assert record["finished_at"] is None
        assert record["meta"] == {"trigger": "manual"}

        await update_run_meta(db, run_id, {"trigger": "manual", "steps": {"dump": {"exit_code": 0}}})
        assert await finish_run(db, run_id, RunStatus.SUCCESS) is True

        record = await get_run(db, run_id)
        assert record["status"] == "success"
        assert record["finished_at"] is not None
        assert record["meta"]["steps"]["dump"]["exit_code"] == 0


@pytest.mark.asyncio
async def test_terminal_status_is_written_once(state_db_path: Path):
    async with aiosqlite.connect(state_db_path) as db:
        run_id = await create_run(db, RunType.RESTORE)

        assert await finish_run(db, run_id, RunStatus.FAILED, {"error_message": "boom"}) is True
        assert await finish_run(db, run_id, RunStatus.SUCCESS, {}) is False

        record = await get_run(db, run_id)
        assert record["status"] == "failed"
        assert record["meta"] == {"error_message": "boom"}


@pytest.mark.asyncio
async def test_running_is_not_a_terminal_status(state_db_path: Path):
    async with aiosqlite.connect(state_db_path) as db:
        run_id = await create_run(db, RunType.BACKUP)
        with pytest.raises(StoreError):
            await finish_run(db, run_id, RunStatus.RUNNING)


@pytest.mark.asyncio
async def test_skipped_run_is_finished_immediately(state_db_path: Path):
    async with aiosqlite.connect(state_db_path) as db:
        run_id = await record_skipped_run(db, RunType.RESTORE, "lock_unavailable", {"scope": "db"})
        record = await get_run(db, run_id)

    assert record["status"] == "skipped"
    assert record["finished_at"] is not None
    assert record["meta"] == {"scope": "db", "reason": "lock_unavailable"}


@pytest.mark.asyncio
async def test_merge_run_meta_merges_one_level(state_db_path: Path):
    async with aiosqlite.connect(state_db_path) as db:
        run_id = await create_run(db, RunType.EXPORT_FULL, {"export": {"archive_path": "/x.tar.gz", "keep_hours": 24}})

        merged = await merge_run_meta(db, run_id, {"export": {"deleted_at": "2026-01-01T00:00:00+00:00"}, "note": "x"})

        assert merged["export"] == {
            "archive_path": "/x.tar.gz",
            "keep_hours": 24,
            "deleted_at": "2026-01-01T00:00:00+00:00",
        }
        assert (await get_run(db, run_id))["meta"]["note"] == "x"
        assert await merge_run_meta(db, "missing", {"a": 1}) is None


@pytest.mark.asyncio
async def test_list_runs_filters(state_db_path: Path):
    async with aiosqlite.connect(state_db_path) as db:
        backup = await create_run(db, RunType.BACKUP)
        restore = await create_run(db, RunType.RESTORE)
        full = await create_run(db, RunType.EXPORT_FULL)
        delta = await create_run(db, RunType.EXPORT_DELTA)
        await finish_run(db, backup, RunStatus.SUCCESS)

        all_runs = await list_runs(db)
        assert {r["id"] for r in all_runs} == {backup, restore, full, delta}

        exports = await list_runs(db, run_type=[RunType.EXPORT_FULL, "export_delta"])
        assert {r["id"] for r in exports} == {full, delta}

        succeeded = await list_runs(db, status=RunStatus.SUCCESS)
        assert [r["id"] for r in succeeded] == [backup]

        assert len(await list_runs(db, limit=3)) == 3
        assert len(await list_runs(db, limit=3, offset=3)) == 1
        assert await list_runs(db, since="2999-01-01T00:00:00+00:00") == []
        assert len(await list_runs(db, until="2999-01-01T00:00:00+00:00")) == 4


@pytest.mark.asyncio
async def test_baseline_round_trip(state_db_path: Path):
    async with aiosqlite.connect(state_db_path) as db:
        assert await get_baseline(db) is None

        await set_baseline(db, "aaaa1111")
        await set_baseline(db, "bbbb2222")

        baseline = await get_baseline(db)

    assert baseline["baseline_snapshot_id"] == "bbbb2222"
    assert baseline["baseline_created_at"]
