# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
resticops Operation Lock - Single named mutex with a heartbeat info record.

Backup, restore, forget and export pipelines all take the same lock, so at
most one of them touches the project tree and database at a time, across
every worker process sharing the state database.

The lock lives in two SQLite rows:
1. operation_locks - the mutex (owner token + expiry)
2. operation_lock_info - what is running (type, run id, host, pid, context)

The info row carries the owner token of the mutex it describes and is only
reported while that mutex is held and unexpired.
"""

import asyncio
import json
import os
import socket
import time
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, Dict, TypedDict

import aiosqlite
import structlog

from resticops.exceptions import LockError

logger = structlog.get_logger()

LOCK_KEY = "restic-backups:operation"
INFO_KEY = "restic-backups:operation:info"

POLL_INTERVAL_SECONDS = 0.25
DEFAULT_STALE_SECONDS = 900


class OperationLockInfo(TypedDict):
    """What currently holds the operation lock."""

    type: str
    run_id: str | None
    started_at: str  # ISO 8601
    hostname: str
    pid: int
    ttl_seconds: int
    expires_at: str  # ISO 8601
    last_heartbeat_at: str  # ISO 8601
    context: Dict[str, Any]


async def init_lock_db(db_path: Path) -> None:
    """
    Initialize the lock tables.

    Creates tables if they don't exist. This is idempotent.

    Args:
        db_path: Path to the SQLite state database
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS operation_locks (
                    name TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    acquired_at TEXT NOT NULL,
                    expires_at REAL NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS operation_lock_info (
                    name TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    expires_at REAL NOT NULL
                )
            """)

            await db.commit()

        logger.info("lock_db_initialized", db_path=str(db_path))

    except Exception as e:
        raise LockError(
            f"Failed to initialize lock tables: {e}",
            details={"db_path": str(db_path)},
        )


def _hostname() -> str:
    return socket.gethostname() or "unknown"


class OperationLockHandle:
    """
    Ownership of the operation lock, returned by OperationLock.acquire().

    Info updates are best-effort: a failed write is logged and never
    interrupts the pipeline holding the lock.
    """

    def __init__(self, lock: "OperationLock", owner: str, info: OperationLockInfo, ttl_seconds: int):
        self._lock = lock
        self._owner = owner
        self._info = info
        self._ttl_seconds = ttl_seconds
        self._released = False

    @property
    def owner(self) -> str:
        return self._owner

    def info(self) -> OperationLockInfo:
        return OperationLockInfo(**{**self._info, "context": dict(self._info["context"])})

    async def set_run_id(self, run_id: str) -> None:
        await self.update_info({"run_id": run_id})

    async def heartbeat(self, context_patch: Dict[str, Any] | None = None) -> None:
        """Merge context_patch into the info context and refresh both expiries."""
        await self.update_info({"context": context_patch or {}}, heartbeat=True)

    async def update_info(self, patch: Dict[str, Any] | None = None, heartbeat: bool = False) -> None:
        """
        Patch the info record and re-persist it with the original TTL.

        Args:
            patch: Top-level fields to set; a "context" dict is merged
            heartbeat: Also stamp last_heartbeat_at
        """
        patch = dict(patch or {})
        context = patch.pop("context", None)
        if isinstance(context, dict):
            self._info["context"] = {**self._info["context"], **context}
        for key, value in patch.items():
            self._info[key] = value  # type: ignore[literal-required]

        now = datetime.now(UTC)
        if heartbeat:
            self._info["last_heartbeat_at"] = now.isoformat()
        self._info["expires_at"] = (now + timedelta(seconds=self._ttl_seconds)).isoformat()

        try:
            await self._lock._refresh(self._owner, self._info, self._ttl_seconds)
        except aiosqlite.Error as e:
            logger.warning("operation_lock_info_write_failed", error=str(e))

    async def release(self) -> None:
        """Release the mutex and delete the info record."""
        if self._released:
            return
        self._released = True
        try:
            await self._lock._release(self._owner)
        except aiosqlite.Error as e:
            logger.warning("operation_lock_release_failed", error=str(e))
            return
        logger.info("operation_lock_released", type=self._info["type"], run_id=self._info["run_id"])


class OperationLock:
    """
    Cluster-wide mutual exclusion for pipelines over a shared SQLite file.

    Expired rows count as absent, so a crashed holder's lock frees itself
    once its TTL passes.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)

    async def acquire(
        self,
        type: str,
        ttl_seconds: int,
        block_seconds: float = 30,
        context: Dict[str, Any] | None = None,
    ) -> OperationLockHandle | None:
        """
        Try to take the lock, polling for up to block_seconds.

        Args:
            type: Pipeline type stored in the info record
            ttl_seconds: Lock lifetime, refreshed by every heartbeat
            block_seconds: How long to wait for a busy lock (0: single attempt)
            context: Initial info context

        Returns:
            A handle on success, None if the lock stayed busy
        """
        from ulid import ULID

        owner = str(ULID())
        ttl_seconds = max(1, int(ttl_seconds))
        deadline = time.monotonic() + max(0.0, float(block_seconds))

        while True:
            if await self._try_acquire(owner, ttl_seconds):
                break
            if time.monotonic() >= deadline:
                logger.info("operation_lock_busy", type=type, block_seconds=block_seconds)
                return None
            await asyncio.sleep(POLL_INTERVAL_SECONDS)

        now = datetime.now(UTC)
        info = OperationLockInfo(
            type=type,
            run_id=None,
            started_at=now.isoformat(),
            hostname=_hostname(),
            pid=os.getpid(),
            ttl_seconds=ttl_seconds,
            expires_at=(now + timedelta(seconds=ttl_seconds)).isoformat(),
            last_heartbeat_at=now.isoformat(),
            context=dict(context or {}),
        )

        try:
            await self._refresh(owner, info, ttl_seconds)
        except aiosqlite.Error as e:
            logger.warning("operation_lock_info_write_failed", error=str(e))

        logger.info("operation_lock_acquired", type=type, ttl_seconds=ttl_seconds)
        return OperationLockHandle(self, owner, info, ttl_seconds)

    async def get_info(self) -> OperationLockInfo | None:
        """Return the info record of the current holder, or None when the lock is free."""
        now = time.time()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                async with db.execute(
                    """
                    SELECT i.payload
                    FROM operation_lock_info i
                    JOIN operation_locks l ON l.name = ? AND l.owner = i.owner
                    WHERE i.name = ? AND i.expires_at > ? AND l.expires_at > ?
                    """,
                    (LOCK_KEY, INFO_KEY, now, now),
                ) as cursor:
                    row = await cursor.fetchone()
        except aiosqlite.Error as e:
            logger.warning("operation_lock_info_read_failed", error=str(e))
            return None

        if not row:
            return None
        try:
            payload = json.loads(row[0])
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None

    async def is_stale(self, seconds: int = DEFAULT_STALE_SECONDS) -> bool:
        """
        Whether the holder has stopped heartbeating.

        Returns False when nothing holds the lock; True when the last
        heartbeat is missing, unparseable, or at least `seconds` old.
        """
        info = await self.get_info()
        if info is None:
            return False

        last = info.get("last_heartbeat_at")
        if not isinstance(last, str) or not last:
            return True
        try:
            stamp = datetime.fromisoformat(last)
        except ValueError:
            return True
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=UTC)

        return (datetime.now(UTC) - stamp).total_seconds() >= seconds

    async def force_release(self) -> bool:
        """
        Clear the mutex and info record regardless of owner.

        Operator escape hatch only.

        Returns:
            True if both rows were cleared
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("DELETE FROM operation_locks WHERE name = ?", (LOCK_KEY,))
                await db.execute("DELETE FROM operation_lock_info WHERE name = ?", (INFO_KEY,))
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("operation_lock_force_release_failed", error=str(e))
            return False

        logger.warning("operation_lock_force_released")
        return True

    async def _try_acquire(self, owner: str, ttl_seconds: int) -> bool:
        """
        Single check-and-set attempt.

        BEGIN IMMEDIATE makes the check and the write atomic across
        processes. An expired row is taken over.
        """
        now = time.time()
        try:
            async with aiosqlite.connect(self.db_path, isolation_level=None) as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    async with db.execute(
                        "SELECT owner, expires_at FROM operation_locks WHERE name = ?",
                        (LOCK_KEY,),
                    ) as cursor:
                        row = await cursor.fetchone()

                    if row and float(row[1]) > now:
                        await db.execute("ROLLBACK")
                        return False

                    acquired_at = datetime.now(UTC).isoformat()
                    await db.execute(
                        """
                        INSERT INTO operation_locks (name, owner, acquired_at, expires_at)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(name) DO UPDATE SET
                            owner = excluded.owner,
                            acquired_at = excluded.acquired_at,
                            expires_at = excluded.expires_at
                        """,
                        (LOCK_KEY, owner, acquired_at, now + ttl_seconds),
                    )
                    await db.execute("DELETE FROM operation_lock_info WHERE name = ?", (INFO_KEY,))
                    await db.execute("COMMIT")
                    return True
                except BaseException:
                    await db.execute("ROLLBACK")
                    raise
        except aiosqlite.OperationalError as e:
            # Another process holds the write lock on the file; retry next poll
            logger.debug("operation_lock_contended", error=str(e))
            return False

    async def _refresh(self, owner: str, info: OperationLockInfo, ttl_seconds: int) -> None:
        expires_at = time.time() + ttl_seconds
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE operation_locks SET expires_at = ? WHERE name = ? AND owner = ?",
                (expires_at, LOCK_KEY, owner),
            )
            if cursor.rowcount == 0:
                # Lock was force-released or taken over; never write orphan info
                await db.rollback()
                logger.warning("operation_lock_lost", type=info["type"])
                return
            await db.execute(
                """
                INSERT INTO operation_lock_info (name, owner, payload, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    owner = excluded.owner,
                    payload = excluded.payload,
                    expires_at = excluded.expires_at
                """,
                (INFO_KEY, owner, json.dumps(info), expires_at),
            )
            await db.commit()

    async def _release(self, owner: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "DELETE FROM operation_lock_info WHERE name = ? AND owner = ?",
                (INFO_KEY, owner),
            )
            await db.execute(
                "DELETE FROM operation_locks WHERE name = ? AND owner = ?",
                (LOCK_KEY, owner),
            )
            await db.commit()
