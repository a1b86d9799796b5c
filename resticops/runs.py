# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
resticops Runs Store - Audit trail of pipeline runs.

Every pipeline invocation that gets past lock acquisition (or is skipped
because of it) leaves one row in backup_runs. The row starts as
"running", its meta tree is rewritten after every step, and its terminal
status is set exactly once.

The settings_state table holds the baseline snapshot id used by delta
exports.
"""

import json
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List, TypedDict

import aiosqlite
import structlog

from resticops.config import RunStatus, RunType
from resticops.exceptions import StoreError

logger = structlog.get_logger()

TERMINAL_STATUSES = (RunStatus.SUCCESS.value, RunStatus.FAILED.value, RunStatus.SKIPPED.value)


class RunRecord(TypedDict):
    """Record of one pipeline run."""

    id: str  # ULID
    type: str  # backup, restore, forget_snapshot, export_*
    status: str  # running, success, failed, skipped
    started_at: str  # ISO 8601
    finished_at: str | None  # ISO 8601 or None
    meta: Dict[str, Any]


class Baseline(TypedDict):
    """Snapshot the next delta export is computed against."""

    baseline_snapshot_id: str
    baseline_created_at: str  # ISO 8601


async def init_runs_db(db_path: Path) -> None:
    """
    Initialize the runs and settings_state tables.

    Creates tables if they don't exist. This is idempotent.

    Args:
        db_path: Path to the SQLite state database
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS backup_runs (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    meta TEXT NOT NULL DEFAULT '{}',
                    updated_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_backup_runs_type_status
                ON backup_runs(type, status)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_backup_runs_started_at
                ON backup_runs(started_at)
            """)

            # Single-row key/value state
            await db.execute("""
                CREATE TABLE IF NOT EXISTS settings_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            await db.commit()

        logger.info("runs_db_initialized", db_path=str(db_path))

    except Exception as e:
        raise StoreError(
            f"Failed to initialize runs database: {e}",
            details={"db_path": str(db_path)},
        )


def _row_to_record(row: Any) -> RunRecord:
    try:
        meta = json.loads(row[5]) if row[5] else {}
    except ValueError:
        meta = {}
    return RunRecord(
        id=row[0],
        type=row[1],
        status=row[2],
        started_at=row[3],
        finished_at=row[4],
        meta=meta if isinstance(meta, dict) else {},
    )


def _value(enum_or_str: Any) -> str:
    return enum_or_str.value if hasattr(enum_or_str, "value") else str(enum_or_str)


async def create_run(
    db: aiosqlite.Connection,
    run_type: RunType | str,
    meta: Dict[str, Any] | None = None,
    status: RunStatus | str = RunStatus.RUNNING,
) -> str:
    """
    Insert a new run record.

    Args:
        db: SQLite database connection
        run_type: Pipeline type
        meta: Initial meta tree
        status: Initial status (running unless recording a skip)

    Returns:
        The new run id (ULID)
    """
    from ulid import ULID

    run_id = str(ULID())
    now = datetime.now(UTC).isoformat()
    status_value = _value(status)
    finished_at = now if status_value in TERMINAL_STATUSES else None

    await db.execute(
        """
        INSERT INTO backup_runs (id, type, status, started_at, finished_at, meta, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (run_id, _value(run_type), status_value, now, finished_at, json.dumps(meta or {}), now),
    )
    await db.commit()

    logger.info("run_created", run_id=run_id, type=_value(run_type), status=status_value)

    return run_id


async def update_run_meta(
    db: aiosqlite.Connection,
    run_id: str,
    meta: Dict[str, Any],
) -> None:
    """
    Replace a run's meta tree.

    Args:
        db: SQLite database connection
        run_id: Run ID
        meta: Full meta tree to store
    """
    await db.execute(
        "UPDATE backup_runs SET meta = ?, updated_at = ? WHERE id = ?",
        (json.dumps(meta), datetime.now(UTC).isoformat(), run_id),
    )
    await db.commit()


async def merge_run_meta(
    db: aiosqlite.Connection,
    run_id: str,
    patch: Dict[str, Any],
) -> Dict[str, Any] | None:
    """
    Shallow-merge keys into a run's meta tree.

    Nested dicts under the same key are merged one level deep, so a patch
    of {"export": {"deleted_at": ...}} keeps the other export fields.

    Returns:
        The merged meta, or None if the run does not exist
    """
    record = await get_run(db, run_id)
    if record is None:
        return None

    meta = dict(record["meta"])
    for key, value in patch.items():
        current = meta.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            meta[key] = {**current, **value}
        else:
            meta[key] = value

    await update_run_meta(db, run_id, meta)
    return meta


async def finish_run(
    db: aiosqlite.Connection,
    run_id: str,
    status: RunStatus | str,
    meta: Dict[str, Any] | None = None,
) -> bool:
    """
    Set a run's terminal status.

    Only a running record is updated, so the terminal status is written
    exactly once.

    Args:
        db: SQLite database connection
        run_id: Run ID
        status: success, failed or skipped
        meta: Optional final meta tree

    Returns:
        True if the record moved to the terminal status
    """
    status_value = _value(status)
    if status_value not in TERMINAL_STATUSES:
        raise StoreError(f"Invalid terminal status: {status_value}", details={"run_id": run_id})

    now = datetime.now(UTC).isoformat()

    if meta is None:
        cursor = await db.execute(
            """
            UPDATE backup_runs
            SET status = ?, finished_at = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (status_value, now, now, run_id, RunStatus.RUNNING.value),
        )
    else:
        cursor = await db.execute(
            """
            UPDATE backup_runs
            SET status = ?, finished_at = ?, meta = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (status_value, now, json.dumps(meta), now, run_id, RunStatus.RUNNING.value),
        )
    await db.commit()

    updated = cursor.rowcount > 0
    if updated:
        logger.info("run_finished", run_id=run_id, status=status_value)
    else:
        logger.warning("run_finish_ignored", run_id=run_id, status=status_value)

    return updated


async def record_skipped_run(
    db: aiosqlite.Connection,
    run_type: RunType | str,
    reason: str,
    meta: Dict[str, Any] | None = None,
) -> str:
    """
    Record a run that never started, e.g. because the lock was busy.

    Returns:
        The skipped run's id
    """
    return await create_run(
        db,
        run_type,
        {**(meta or {}), "reason": reason},
        status=RunStatus.SKIPPED,
    )


async def get_run(db: aiosqlite.Connection, run_id: str) -> RunRecord | None:
    """
    Get a run record.

    Args:
        db: SQLite database connection
        run_id: Run ID

    Returns:
        Run record or None if not found
    """
    async with db.execute(
        """
        SELECT id, type, status, started_at, finished_at, meta
        FROM backup_runs
        WHERE id = ?
        """,
        (run_id,),
    ) as cursor:
        row = await cursor.fetchone()

        if row:
            return _row_to_record(row)

        return None


async def list_runs(
    db: aiosqlite.Connection,
    run_type: RunType | str | List[RunType | str] | None = None,
    status: RunStatus | str | None = None,
    since: datetime | str | None = None,
    until: datetime | str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> List[RunRecord]:
    """
    List runs, newest first.

    Args:
        db: SQLite database connection
        run_type: Filter by one type or a list of types
        status: Filter by status
        since: Only runs started at or after this time
        until: Only runs started before this time
        limit: Maximum number of records to return
        offset: Number of records to skip

    Returns:
        List of run records
    """
    query = "SELECT id, type, status, started_at, finished_at, meta FROM backup_runs"
    clauses: List[str] = []
    params: List = []

    if run_type is not None:
        types = run_type if isinstance(run_type, list) else [run_type]
        clauses.append(f"type IN ({', '.join('?' for _ in types)})")
        params.extend(_value(t) for t in types)

    if status is not None:
        clauses.append("status = ?")
        params.append(_value(status))

    if since is not None:
        clauses.append("started_at >= ?")
        params.append(since.isoformat() if isinstance(since, datetime) else since)

    if until is not None:
        clauses.append("started_at < ?")
        params.append(until.isoformat() if isinstance(until, datetime) else until)

    if clauses:
        query += " WHERE " + " AND ".join(clauses)

    query += " ORDER BY started_at DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    records: List[RunRecord] = []

    async with db.execute(query, params) as cursor:
        async for row in cursor:
            records.append(_row_to_record(row))

    return records


# ============================================================================
# Baseline
# ============================================================================

_BASELINE_KEY = "baseline"


async def get_baseline(db: aiosqlite.Connection) -> Baseline | None:
    """Return the stored baseline snapshot, if any."""
    async with db.execute(
        "SELECT value FROM settings_state WHERE key = ?",
        (_BASELINE_KEY,),
    ) as cursor:
        row = await cursor.fetchone()

    if not row:
        return None
    try:
        value = json.loads(row[0])
    except ValueError:
        return None
    if not isinstance(value, dict) or not value.get("baseline_snapshot_id"):
        return None

    return Baseline(
        baseline_snapshot_id=str(value["baseline_snapshot_id"]),
        baseline_created_at=str(value.get("baseline_created_at") or ""),
    )


async def set_baseline(db: aiosqlite.Connection, snapshot_id: str) -> Baseline:
    """
    Persist the snapshot a later delta export is computed against.

    Args:
        db: SQLite database connection
        snapshot_id: Full snapshot id

    Returns:
        The stored baseline
    """
    now = datetime.now(UTC).isoformat()
    baseline = Baseline(baseline_snapshot_id=snapshot_id, baseline_created_at=now)

    await db.execute(
        """
        INSERT INTO settings_state (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (_BASELINE_KEY, json.dumps(baseline), now),
    )
    await db.commit()

    logger.info("baseline_updated", snapshot_id=snapshot_id)

    return baseline
