# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
resticops Cleanup - Expiry of export archives and rollback directories.

Export archives are deleted once their expires_at passes; the run keeps
its meta with export.deleted_at set. Rollback directories left by atomic
restores are removed after their retention window. Paths are checked
against their expected location and name before anything is deleted.
"""

import os
import re
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, Dict

import aiosqlite
import structlog

from resticops.config import RunType, Settings
from resticops.fs import remove_tree
from resticops.pipelines.common import TIMESTAMP_FORMAT
from resticops.runs import get_run, list_runs, merge_run_meta, update_run_meta

logger = structlog.get_logger()

EXPORT_RUN_TYPES = [RunType.EXPORT_SNAPSHOT, RunType.EXPORT_FULL, RunType.EXPORT_DELTA]
ARCHIVE_KEYS = ("archive_path", "archive_name", "archive_size", "archive_sha256")
DEFAULT_HOURS = 24
ROLLBACK_MARKER = ".__before_restore_"

_WORK_DIR = re.compile(r"^work-run-\S+-(\d{14})$")
_STAMP_PREFIX = re.compile(r"^(\d{14})")

_PAGE_SIZE = 200


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        moment = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return moment if moment.tzinfo else moment.replace(tzinfo=UTC)


def _parse_stamp(value: str) -> datetime | None:
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None


def _reference_time(path: Path, stamp: str | None) -> datetime | None:
    """The timestamp in a directory's name, else its mtime."""
    if stamp:
        moment = _parse_stamp(stamp)
        if moment is not None:
            return moment
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, UTC)
    except OSError:
        return None


def _normalize_hours(hours: int | None) -> int:
    return hours if hours and hours > 0 else DEFAULT_HOURS


# ============================================================================
# Export archives
# ============================================================================

def mark_export_deleted(meta: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Set deleted_at and expires_at to now and drop the archive facts."""
    meta = dict(meta)
    export = dict(meta.get("export") or {})
    export["deleted_at"] = now.isoformat()
    export["expires_at"] = now.isoformat()
    for key in ARCHIVE_KEYS:
        export.pop(key, None)
    meta["export"] = export
    return meta


async def cleanup_export_archive(
    settings: Settings,
    state: Dict[str, Any],
    run_id: str,
    attempt: int = 1,
) -> bool:
    """
    Delete one export run's archive and mark it deleted.

    Runs of other types and already-deleted archives are left alone.

    Returns:
        True if the run was marked deleted
    """
    async with aiosqlite.connect(state["state_db_path"]) as db:
        record = await get_run(db, run_id)
        if record is None or record["type"] not in [t.value for t in EXPORT_RUN_TYPES]:
            return False

        export = record["meta"].get("export") or {}
        if export.get("deleted_at"):
            return False

        archive_path = str(export.get("archive_path") or "").strip()
        if archive_path and os.path.isfile(archive_path):
            errors = remove_tree(archive_path)
            if errors:
                logger.warning("archive_delete_failed", run_id=run_id, errors=errors)

        await update_run_meta(db, run_id, mark_export_deleted(record["meta"], datetime.now(UTC)))

    logger.info("export_archive_deleted", run_id=run_id, path=archive_path)

    return True


def is_safe_work_dir(path: Path, exports_dir: Path) -> bool:
    base = os.path.realpath(exports_dir)
    real = os.path.realpath(path)
    return real.startswith(base + os.sep) and os.path.basename(real).startswith("work-run-")


async def cleanup_expired_archives(
    settings: Settings,
    state: Dict[str, Any],
    hours: int = DEFAULT_HOURS,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """
    Delete expired export archives and stale work directories.

    An archive is expired once its expires_at has passed. Work directories
    are stale when the timestamp in their name (else their mtime) is older
    than `hours`.

    Args:
        settings: Settings snapshot
        state: Runtime state from initialize_state()
        hours: Age of stale work directories (values <= 0 mean 24)
        dry_run: Only report what would be removed

    Returns:
        Dict with archives and work_dirs lists and a skipped list
    """
    hours = _normalize_hours(hours)
    now = datetime.now(UTC)
    report: Dict[str, Any] = {"archives": [], "work_dirs": [], "skipped": [], "dry_run": dry_run}

    async with aiosqlite.connect(state["state_db_path"]) as db:
        offset = 0
        while True:
            records = await list_runs(db, run_type=list(EXPORT_RUN_TYPES), limit=_PAGE_SIZE, offset=offset)
            for record in records:
                export = record["meta"].get("export") or {}
                if export.get("deleted_at"):
                    continue
                expires_at = _parse_time(export.get("expires_at"))
                if expires_at is None or expires_at > now:
                    continue

                archive_path = str(export.get("archive_path") or "")
                report["archives"].append({"run_id": record["id"], "path": archive_path or None})
                if dry_run:
                    continue

                if archive_path and os.path.isfile(archive_path):
                    remove_tree(archive_path)
                await update_run_meta(db, record["id"], mark_export_deleted(record["meta"], now))

            if len(records) < _PAGE_SIZE:
                break
            offset += _PAGE_SIZE

    exports_dir = Path(settings.exports_dir)
    if not exports_dir.is_dir():
        logger.warning("exports_dir_missing", path=str(exports_dir))
        return report

    cutoff = now - timedelta(hours=hours)
    for entry in sorted(exports_dir.iterdir()):
        if not entry.name.startswith("work-run-") or not entry.is_dir():
            continue
        if not is_safe_work_dir(entry, exports_dir):
            report["skipped"].append({"path": str(entry), "reason": "unsafe"})
            continue

        match = _WORK_DIR.match(entry.name)
        reference = _reference_time(entry, match.group(1) if match else None)
        if reference is None:
            report["skipped"].append({"path": str(entry), "reason": "no_mtime"})
            continue
        if reference > cutoff:
            continue

        if dry_run:
            report["work_dirs"].append(str(entry))
            continue

        errors = remove_tree(entry)
        if errors:
            report["skipped"].append({"path": str(entry), "reason": "remove_failed"})
        else:
            report["work_dirs"].append(str(entry))

    logger.info(
        "export_cleanup_finished",
        archives=len(report["archives"]),
        work_dirs=len(report["work_dirs"]),
        dry_run=dry_run,
    )

    return report


# ============================================================================
# Rollback directories
# ============================================================================

def rollback_prefix(project_root: Path | str) -> str:
    return os.path.basename(str(project_root).rstrip(os.sep)) + ROLLBACK_MARKER


def is_safe_rollback_path(path: Path | str, project_root: Path | str) -> bool:
    """
    Whether path is a rollback directory of project_root.

    It must sit next to the project root, carry the
    ``{basename}.__before_restore_`` prefix and not be the root itself.
    """
    root_real = os.path.realpath(str(project_root).rstrip(os.sep))
    parent_real = os.path.dirname(root_real)
    path_real = os.path.realpath(str(path))

    if path_real == root_real:
        return False
    if not os.path.basename(path_real).startswith(os.path.basename(root_real) + ROLLBACK_MARKER):
        return False
    return path_real.startswith(parent_real.rstrip(os.sep) + os.sep)


async def _update_cleanup_meta(db: aiosqlite.Connection, run_id: str | None, data: Dict[str, Any]) -> None:
    if run_id:
        await merge_run_meta(db, run_id, {"cleanup": data})


async def cleanup_rollback_dir(
    settings: Settings,
    state: Dict[str, Any],
    path: str,
    run_id: str | None = None,
    not_before: float | None = None,
    attempt: int = 1,
) -> bool:
    """
    Remove one rollback directory left by an atomic restore.

    The outcome is merged into the restore run's ``cleanup`` meta.

    Args:
        settings: Settings snapshot
        state: Runtime state from initialize_state()
        path: Rollback directory
        run_id: Restore run that created it
        not_before: Unix time before which nothing is removed
        attempt: Queue attempt number

    Returns:
        True if the directory is gone afterwards
    """
    now = datetime.now(UTC)

    async with aiosqlite.connect(state["state_db_path"]) as db:
        if not_before is not None and now.timestamp() < float(not_before):
            await _update_cleanup_meta(
                db,
                run_id,
                {
                    "scheduled": True,
                    "not_before": datetime.fromtimestamp(float(not_before), UTC).isoformat(),
                    "skipped": "not_due",
                },
            )
            return False

        outcome: Dict[str, Any] = {"attempted_at": now.isoformat(), "path": path}

        if not is_safe_rollback_path(path, settings.project_root):
            outcome.update(done=False, error="Unsafe rollback path. Cleanup skipped.")
            await _update_cleanup_meta(db, run_id, outcome)
            logger.warning("rollback_cleanup_refused", path=path, run_id=run_id)
            return False

        if not os.path.isdir(path):
            outcome.update(done=True, note="Rollback directory was already removed.")
            await _update_cleanup_meta(db, run_id, outcome)
            return True

        errors = remove_tree(path)
        if errors and os.path.isdir(path):
            outcome.update(done=False, error="Failed to delete rollback directory.", errors=errors[:10])
            await _update_cleanup_meta(db, run_id, outcome)
            logger.warning("rollback_cleanup_failed", path=path, run_id=run_id)
            return False

        outcome["done"] = True
        await _update_cleanup_meta(db, run_id, outcome)

    logger.info("rollback_dir_removed", path=path, run_id=run_id)

    return True


def cleanup_rollback_dirs(settings: Settings, hours: int = DEFAULT_HOURS, dry_run: bool = False) -> Dict[str, Any]:
    """
    Sweep rollback directories older than `hours` next to the project root.

    Age comes from the 14-digit timestamp in the name, falling back to mtime.

    Returns:
        Dict with removed, would_remove and skipped lists
    """
    hours = _normalize_hours(hours)
    project_root = Path(str(settings.project_root).rstrip(os.sep))
    parent = project_root.parent
    report: Dict[str, Any] = {"removed": [], "would_remove": [], "skipped": [], "dry_run": dry_run}

    if not parent.is_dir():
        report["error"] = f"Parent directory not found: {parent}"
        return report

    prefix = rollback_prefix(project_root)
    cutoff = datetime.now(UTC) - timedelta(hours=hours)

    for entry in sorted(parent.iterdir()):
        if not entry.name.startswith(prefix) or not entry.is_dir():
            continue
        if not is_safe_rollback_path(entry, project_root):
            report["skipped"].append({"path": str(entry), "reason": "unsafe"})
            continue

        match = _STAMP_PREFIX.match(entry.name[len(prefix):])
        reference = _reference_time(entry, match.group(1) if match else None)
        if reference is None:
            report["skipped"].append({"path": str(entry), "reason": "no_mtime"})
            continue
        if reference > cutoff:
            continue

        if dry_run:
            report["would_remove"].append(str(entry))
            continue

        errors = remove_tree(entry)
        if errors:
            report["skipped"].append({"path": str(entry), "reason": "remove_failed"})
        else:
            report["removed"].append(str(entry))

    logger.info("rollback_cleanup_finished", removed=len(report["removed"]), dry_run=dry_run)

    return report
