# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for the operation lock.

These tests verify:
1. Mutual exclusion - a held lock cannot be taken again
2. Expiry - a crashed holder's lock frees itself
3. Info record - only reported while its mutex is held
4. Force release - a released handle cannot clobber a new holder
"""

import time
from pathlib import Path

import aiosqlite
import pytest

from resticops.lock import LOCK_KEY, OperationLock


@pytest.mark.asyncio
async def test_lock_is_exclusive(state_db_path: Path):
    lock = OperationLock(state_db_path)

    handle = await lock.acquire("backup", 600, block_seconds=0)
    assert handle is not None

    assert await lock.acquire("restore", 600, block_seconds=0) is None

    await handle.release()

    again = await lock.acquire("restore", 600, block_seconds=0)
    assert again is not None
    await again.release()


@pytest.mark.asyncio
async def test_expired_lock_is_taken_over(state_db_path: Path):
    """A holder that stopped refreshing loses the lock once its TTL passes."""
    lock = OperationLock(state_db_path)
    await lock.acquire("backup", 600, block_seconds=0)

    async with aiosqlite.connect(state_db_path) as db:
        await db.execute(
            "UPDATE operation_locks SET expires_at = ? WHERE name = ?",
            (time.time() - 10, LOCK_KEY),
        )
        await db.commit()

    assert await lock.get_info() is None

    handle = await lock.acquire("restore", 600, block_seconds=0)
    assert handle is not None
    assert (await lock.get_info())["type"] == "restore"


@pytest.mark.asyncio
async def test_info_tracks_run_and_heartbeat_context(state_db_path: Path):
    lock = OperationLock(state_db_path)
    handle = await lock.acquire("backup", 600, block_seconds=0, context={"trigger": "manual"})

    await handle.set_run_id("01HZRUN")
    await handle.heartbeat({"step": "dump"})

    info = await lock.get_info()
    assert info["type"] == "backup"
    assert info["run_id"] == "01HZRUN"
    assert info["context"] == {"trigger": "manual", "step": "dump"}
    assert info["ttl_seconds"] == 600
    assert info["pid"] > 0

    await handle.release()
    assert await lock.get_info() is None


@pytest.mark.asyncio
async def test_staleness(state_db_path: Path):
    lock = OperationLock(state_db_path)
    assert await lock.is_stale(0) is False

    handle = await lock.acquire("backup", 600, block_seconds=0)

    assert await lock.is_stale(3600) is False
    assert await lock.is_stale(0) is True

    await handle.release()


@pytest.mark.asyncio
async def test_force_release_fences_the_old_holder(state_db_path: Path):
    """After a force release the old handle can neither refresh nor release the new lock."""
    lock = OperationLock(state_db_path)
    old = await lock.acquire("backup", 600, block_seconds=0)

    assert await lock.force_release() is True
    assert await lock.get_info() is None

    await old.heartbeat({"step": "restic_backup"})
    assert await lock.get_info() is None

    new = await lock.acquire("restore", 600, block_seconds=0)
    assert new is not None

    await old.release()

    info = await lock.get_info()
    assert info is not None
    assert info["type"] == "restore"
    await new.release()


@pytest.mark.asyncio
async def test_blocking_acquire_gives_up(state_db_path: Path):
    lock = OperationLock(state_db_path)
    handle = await lock.acquire("backup", 600, block_seconds=0)

    started = time.monotonic()
    assert await lock.acquire("export_full", 600, block_seconds=0.5) is None
    assert time.monotonic() - started >= 0.5

    await handle.release()
