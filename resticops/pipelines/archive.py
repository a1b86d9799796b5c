# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Steps shared by the export pipelines: scratch workspaces, snapshot
lookup, packing and archive expiry.
"""

import asyncio
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, Dict, List, Tuple

import structlog

from resticops.bundle import pack_archive
from resticops.config import Settings
from resticops.db.base import META_OUTPUT_LIMIT
from resticops.exceptions import PipelineError, ProcessError
from resticops.fs import ensure_dir, remove_tree, sha256_file
from resticops.lock import OperationLockHandle
from resticops.meta import RunState
from resticops.pipelines.common import RunRecorder
from resticops.process import step_meta

logger = structlog.get_logger()

EXPORT_LOCK_TTL_SECONDS = 14400
DEFAULT_KEEP_HOURS = 24
ARCHIVE_FORMAT = "tar.gz"


# ============================================================================
# Snapshots
# ============================================================================

def _time_unix(value: Any) -> float | None:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # restic prints nanoseconds; fromisoformat accepts at most microseconds
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for index, char in enumerate(tail):
            if not char.isdigit():
                rest = tail[index:]
                break
            digits += char
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.timestamp()


def normalize_snapshots(snapshots: Any) -> List[Dict[str, Any]]:
    """
    Reduce restic's snapshot list to id, short_id, time, time_unix and paths.

    Entries without an id are dropped.
    """
    normalized: List[Dict[str, Any]] = []
    if not isinstance(snapshots, list):
        return normalized

    for snapshot in snapshots:
        if not isinstance(snapshot, dict):
            continue
        snapshot_id = str(snapshot.get("id") or "").strip()
        if not snapshot_id:
            continue
        normalized.append(
            {
                "id": snapshot_id,
                "short_id": str(snapshot.get("short_id") or "").strip() or snapshot_id[:8],
                "time": snapshot.get("time"),
                "time_unix": _time_unix(snapshot.get("time")),
                "paths": [str(p) for p in snapshot.get("paths") or [] if str(p).strip()],
            }
        )
    return normalized


def resolve_latest(snapshots: List[Dict[str, Any]]) -> Dict[str, Any] | None:
    """Newest snapshot by time; on equal times the later list entry wins."""
    latest = None
    latest_time = None
    for snapshot in snapshots:
        moment = snapshot.get("time_unix")
        if moment is None:
            continue
        if latest_time is None or moment >= latest_time:
            latest = snapshot
            latest_time = moment
    return latest


def find_by_id(snapshots: List[Dict[str, Any]], snapshot_id: str) -> Dict[str, Any] | None:
    """Match a full id, a short id or an id prefix."""
    snapshot_id = snapshot_id.strip()
    if not snapshot_id:
        return None
    for snapshot in snapshots:
        if snapshot["id"] == snapshot_id or snapshot["short_id"] == snapshot_id:
            return snapshot
    for snapshot in snapshots:
        if snapshot["id"].startswith(snapshot_id):
            return snapshot
    return None


async def load_snapshots(restic: Any, run: RunState, recorder: RunRecorder, timeout: int) -> List[Dict[str, Any]]:
    """
    List the repository snapshots as step ``restic_snapshots``.

    Raises:
        ProcessError: If restic fails or prints something other than a list
    """
    step = run.begin("restic_snapshots")
    result = await restic.snapshots(timeout=timeout, max_output_bytes=None)
    run.record(step, step_meta(result, META_OUTPUT_LIMIT))
    await recorder.save()

    if not result.ok or not isinstance(result.parsed_json, list):
        raise ProcessError(result, "Unable to load snapshots from restic.")

    return normalize_snapshots(result.parsed_json)


# ============================================================================
# Workspace and archive
# ============================================================================

def prepare_workspace(settings: Settings, run_id: str, stamp: str) -> Tuple[Path, Path, Path]:
    """
    Create ``work-run-{run}-{stamp}`` with restore/ and bundle/ inside.

    Returns:
        (work_dir, restore_dir, bundle_dir)
    """
    exports_dir = ensure_dir(settings.exports_dir)
    work_dir = ensure_dir(exports_dir / f"work-run-{run_id}-{stamp}")
    return work_dir, ensure_dir(work_dir / "restore"), ensure_dir(work_dir / "bundle")


def expires_at_for(keep_hours: int, now: datetime | None = None) -> datetime:
    """Archives are kept at least one hour."""
    return (now or datetime.now(UTC)) + timedelta(hours=max(1, int(keep_hours)))


async def pack_bundle(
    run: RunState,
    recorder: RunRecorder,
    handle: OperationLockHandle,
    bundle_dir: Path,
    top_folder: str,
    archive_path: Path,
) -> Dict[str, Any]:
    """
    Pack bundle_dir/top_folder into archive_path as step ``pack_tar_gz``.

    Returns:
        Archive facts: archive_size and archive_sha256
    """
    step = run.begin("pack_tar_gz")
    await handle.heartbeat({"step": step})

    started = datetime.now(UTC)
    loop = asyncio.get_running_loop()
    try:
        await loop.run_in_executor(None, pack_archive, bundle_dir / top_folder, archive_path)
    except PipelineError as e:
        run.record(step, {"exit_code": 1, "stderr": str(e.details.get("error", "")), "command": "tar -czf"})
        await recorder.save()
        raise

    run.record(
        step,
        {
            "exit_code": 0,
            "duration_ms": int((datetime.now(UTC) - started).total_seconds() * 1000),
            "command": f"tar -czf {archive_path.name} {top_folder}",
        },
    )

    if not archive_path.is_file():
        raise PipelineError("Archive packing failed.")

    return {
        "archive_size": archive_path.stat().st_size,
        "archive_sha256": await loop.run_in_executor(None, sha256_file, archive_path),
    }


async def schedule_archive_cleanup(state: Dict[str, Any], recorder: RunRecorder, expires_at: datetime) -> bool:
    """Queue deletion of the run's archive at expires_at, when a queue is available."""
    export = recorder.run.section("export")
    if not state.get("queue_enabled"):
        export["cleanup_scheduled"] = False
        return False

    from resticops.queue import dispatch

    delay = max(0.0, (expires_at - datetime.now(UTC)).total_seconds())
    await dispatch(recorder.db, "cleanup_export_archive", {"run_id": recorder.run_id}, delay=delay)
    export["cleanup_scheduled"] = True
    return True


def discard_partial_archive(archive_path: Path | None) -> None:
    if archive_path is not None and archive_path.is_file():
        errors = remove_tree(archive_path)
        if errors:
            logger.warning("partial_archive_not_removed", path=str(archive_path), errors=errors)


def discard_workspace(work_dir: Path | None) -> None:
    if work_dir is None:
        return
    errors = remove_tree(work_dir)
    if errors:
        logger.warning("workspace_cleanup_incomplete", path=str(work_dir), errors=errors[:10])
