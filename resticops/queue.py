# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
resticops Job Queue - Persisted pipeline invocations in SQLite.

Jobs are rows with a name, a JSON payload and an availability time. A
worker claims due jobs, runs the mapped pipeline and marks the job done
or failed. Failed jobs are kept for inspection and never retried; only
lock contention puts work back on the queue (as a new, delayed job).
"""

import asyncio
import json
import time
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, TypedDict

import aiosqlite
import structlog

from resticops.exceptions import StoreError

logger = structlog.get_logger()

# A reserved job whose worker died becomes claimable again after this long
RESERVATION_TIMEOUT_SECONDS = 21600
WORKER_POLL_SECONDS = 1.0


class QueuedJob(TypedDict):
    """A job row."""

    id: str  # ULID
    name: str
    payload: Dict[str, Any]
    attempts: int
    available_at: float  # Unix time
    created_at: str  # ISO 8601


async def init_queue_db(db_path: Path) -> None:
    """
    Initialize the queue table.

    Creates tables if they don't exist. This is idempotent.

    Args:
        db_path: Path to the SQLite state database
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS queue_jobs (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    payload TEXT NOT NULL DEFAULT '{}',
                    attempts INTEGER NOT NULL DEFAULT 1,
                    available_at REAL NOT NULL,
                    reserved_at REAL,
                    created_at TEXT NOT NULL,
                    failed_at TEXT,
                    error TEXT
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_queue_jobs_available
                ON queue_jobs(available_at)
            """)

            await db.commit()

        logger.info("queue_db_initialized", db_path=str(db_path))

    except Exception as e:
        raise StoreError(
            f"Failed to initialize queue database: {e}",
            details={"db_path": str(db_path)},
        )


def _row_to_job(row: Any) -> QueuedJob:
    try:
        payload = json.loads(row[2]) if row[2] else {}
    except ValueError:
        payload = {}
    return QueuedJob(
        id=row[0],
        name=row[1],
        payload=payload if isinstance(payload, dict) else {},
        attempts=int(row[3]),
        available_at=float(row[4]),
        created_at=row[5],
    )


async def dispatch(
    db: aiosqlite.Connection,
    job: str,
    payload: Dict[str, Any] | None = None,
    delay: float = 0,
    attempts: int = 1,
) -> str:
    """
    Queue a job.

    Args:
        db: SQLite database connection
        job: Job name (see JOB_HANDLERS)
        payload: Keyword arguments for the handler
        delay: Seconds before the job becomes due
        attempts: Attempt number the handler sees

    Returns:
        The job id (ULID)
    """
    from ulid import ULID

    job_id = str(ULID())
    await db.execute(
        """
        INSERT INTO queue_jobs (id, name, payload, attempts, available_at, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            job_id,
            job,
            json.dumps(payload or {}),
            max(1, int(attempts)),
            time.time() + max(0.0, float(delay)),
            datetime.now(UTC).isoformat(),
        ),
    )
    await db.commit()

    logger.info("job_dispatched", job_id=job_id, job=job, delay=delay, attempts=attempts)

    return job_id


async def claim_due(db: aiosqlite.Connection, limit: int = 1) -> List[QueuedJob]:
    """
    Reserve up to `limit` due jobs, oldest first.

    Each row is reserved with a conditional UPDATE, so two workers never
    claim the same job.
    """
    now = time.time()
    stale_before = now - RESERVATION_TIMEOUT_SECONDS

    async with db.execute(
        """
        SELECT id, name, payload, attempts, available_at, created_at
        FROM queue_jobs
        WHERE failed_at IS NULL
          AND available_at <= ?
          AND (reserved_at IS NULL OR reserved_at < ?)
        ORDER BY available_at ASC, id ASC
        LIMIT ?
        """,
        (now, stale_before, limit),
    ) as cursor:
        rows = await cursor.fetchall()

    claimed: List[QueuedJob] = []
    for row in rows:
        cursor = await db.execute(
            """
            UPDATE queue_jobs SET reserved_at = ?
            WHERE id = ? AND failed_at IS NULL AND (reserved_at IS NULL OR reserved_at < ?)
            """,
            (now, row[0], stale_before),
        )
        if cursor.rowcount > 0:
            claimed.append(_row_to_job(row))
    await db.commit()

    return claimed


async def complete(db: aiosqlite.Connection, job_id: str) -> None:
    await db.execute("DELETE FROM queue_jobs WHERE id = ?", (job_id,))
    await db.commit()


async def release(db: aiosqlite.Connection, job_id: str, delay: float = 0) -> None:
    """Put a reserved job back, due after `delay` seconds."""
    await db.execute(
        "UPDATE queue_jobs SET reserved_at = NULL, available_at = ? WHERE id = ?",
        (time.time() + max(0.0, float(delay)), job_id),
    )
    await db.commit()


async def fail(db: aiosqlite.Connection, job_id: str, error: str) -> None:
    await db.execute(
        "UPDATE queue_jobs SET failed_at = ?, error = ?, reserved_at = NULL WHERE id = ?",
        (datetime.now(UTC).isoformat(), error, job_id),
    )
    await db.commit()


async def list_jobs(db: aiosqlite.Connection, include_failed: bool = False) -> List[QueuedJob]:
    query = "SELECT id, name, payload, attempts, available_at, created_at FROM queue_jobs"
    if not include_failed:
        query += " WHERE failed_at IS NULL"
    query += " ORDER BY available_at ASC, id ASC"

    async with db.execute(query) as cursor:
        return [_row_to_job(row) for row in await cursor.fetchall()]


# ============================================================================
# Worker
# ============================================================================

JobHandler = Callable[..., Awaitable[Any]]


def job_handlers() -> Dict[str, JobHandler]:
    """Map job names to their pipeline entry points."""
    from resticops.cleanup import cleanup_export_archive, cleanup_rollback_dir
    from resticops.pipelines.backup import run_backup
    from resticops.pipelines.export_delta import run_delta_export
    from resticops.pipelines.export_full import run_full_export, run_snapshot_export
    from resticops.pipelines.forget import run_forget_snapshot
    from resticops.pipelines.restore import run_restore

    return {
        "backup": run_backup,
        "restore": run_restore,
        "forget_snapshot": run_forget_snapshot,
        "export_full": run_full_export,
        "export_snapshot": run_snapshot_export,
        "export_delta": run_delta_export,
        "cleanup_export_archive": cleanup_export_archive,
        "cleanup_rollback_dir": cleanup_rollback_dir,
    }


async def run_job(settings: Any, state: Any, job: QueuedJob) -> None:
    """
    Run one claimed job and settle its row.

    Pipelines record their own failures; the job row only keeps the
    error message.
    """
    handlers = job_handlers()
    handler = handlers.get(job["name"])

    async with aiosqlite.connect(state["state_db_path"]) as db:
        if handler is None:
            logger.error("job_unknown", job_id=job["id"], job=job["name"])
            await fail(db, job["id"], f"Unknown job [{job['name']}].")
            return

        logger.info("job_started", job_id=job["id"], job=job["name"], attempts=job["attempts"])

        try:
            await handler(settings, state, attempt=job["attempts"], **job["payload"])
        except Exception as e:
            logger.error("job_failed", job_id=job["id"], job=job["name"], error=str(e))
            await fail(db, job["id"], str(e))
            return

        await complete(db, job["id"])

    logger.info("job_finished", job_id=job["id"], job=job["name"])


async def run_worker(
    settings: Any,
    state: Any,
    once: bool = False,
    poll_interval: float = WORKER_POLL_SECONDS,
) -> int:
    """
    Claim and run due jobs one at a time.

    Args:
        settings: Settings snapshot handed to every pipeline
        state: Runtime state from initialize_state()
        once: Drain the currently due jobs and return
        poll_interval: Sleep between empty polls

    Returns:
        Number of jobs processed
    """
    processed = 0
    while True:
        async with aiosqlite.connect(state["state_db_path"]) as db:
            jobs = await claim_due(db, limit=1)

        if not jobs:
            if once:
                return processed
            await asyncio.sleep(poll_interval)
            continue

        for job in jobs:
            await run_job(settings, state, job)
            processed += 1
