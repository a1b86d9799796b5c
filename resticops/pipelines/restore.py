# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Restore pipeline.

States, in order:

    preflight -> staged_restore -> [safety_backup] -> maintenance_down
      -> files_cutover -> db_cutover -> post_cutover -> maintenance_up

Nothing irreversible happens before maintenance_down. A failure at or
after the cutover rolls back what was changed: the previous tree is
moved back into place and a wiped database is re-imported. Maintenance
mode is always lifted again before the run ends.

Atomic mode replaces the project root with two renames. Between the
first and the second rename the project root does not exist; a crash in
that window leaves the live tree at ``{root}.__before_restore_{stamp}``.
"""

import math
import os
import shutil
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, Dict, List

import aiosqlite
import structlog

from resticops.config import RestoreMode, RestoreScope, RunType, Settings
from resticops.db.base import DUMP_RELATIVE_PATH, META_OUTPUT_LIMIT, elapsed_ms
from resticops.exceptions import ConfigurationError, PipelineError, ProcessError, ResticOpsError
from resticops.fs import (
    GIB,
    clear_directory,
    directory_size,
    ensure_dir,
    free_bytes,
    move_path,
    remove_tree,
    same_filesystem,
)
from resticops.lock import OperationLockHandle
from resticops.maintenance import generate_down_secret
from resticops.meta import RunState
from resticops.pipelines.common import (
    HEARTBEAT_EVERY_SECONDS,
    RunRecorder,
    hostname,
    lock_ttl,
    normalize_trigger,
    record_lock_unavailable,
    sanitize_error_message,
    step_heartbeat,
    timestamp,
)
from resticops.process import find_binary, run_command, step_meta, truncate_output

logger = structlog.get_logger()

RESTORE_LOCK_TTL_SECONDS = 21600
ROLLBACK_CLEANUP_DELAY_HOURS = 24
SPACE_OVERHEAD_FACTOR = 1.15
SPACE_RESERVE_BYTES = 2 * GIB
STATS_TIMEOUT_SECONDS = 600

RUNTIME_CACHE_DIRS = ("views", "cache", "sessions", "testing")
SAFETY_DUMP_NAME = "safety-db.sql.gz"


# ============================================================================
# Argument normalization
# ============================================================================

def normalize_scope(scope: str | RestoreScope | None) -> RestoreScope:
    """db/database, files/file or both; anything else means files."""
    value = scope.value if isinstance(scope, RestoreScope) else (scope or "").strip().lower()
    if value in ("db", "database"):
        return RestoreScope.DB
    if value == "both":
        return RestoreScope.BOTH
    return RestoreScope.FILES


def normalize_mode(mode: str | RestoreMode | None, scope: RestoreScope) -> RestoreMode | None:
    """rsync or atomic for file restores; None for database-only restores."""
    if scope == RestoreScope.DB:
        return None
    value = mode.value if isinstance(mode, RestoreMode) else (mode or "rsync").strip().lower()
    return RestoreMode.ATOMIC if value == RestoreMode.ATOMIC.value else RestoreMode.RSYNC


# ============================================================================
# Preflight
# ============================================================================

def resolve_snapshot(snapshots: List[Any], snapshot_id: str) -> Dict[str, Any]:
    """
    Find a snapshot by full id, short id or id prefix.

    Raises:
        PipelineError: If no snapshot matches
    """
    snapshot_id = snapshot_id.strip()
    if snapshot_id:
        for snapshot in snapshots:
            if not isinstance(snapshot, dict):
                continue
            full_id = str(snapshot.get("id") or "").strip()
            if not full_id:
                continue
            short_id = str(snapshot.get("short_id") or "").strip() or None
            if full_id == snapshot_id or short_id == snapshot_id or full_id.startswith(snapshot_id):
                return {
                    "id": full_id,
                    "short_id": short_id or full_id[:8],
                    "time": snapshot.get("time"),
                    "hostname": snapshot.get("hostname"),
                    "tags": [str(t) for t in snapshot.get("tags") or []],
                    "paths": [str(p) for p in snapshot.get("paths") or []],
                }

    raise PipelineError("Snapshot was not found in the repository.", details={"snapshot_id": snapshot_id})


def ensure_existing_directory(path: Path | str, must_be_writable: bool = False, context: str = "directory") -> None:
    """
    Require an existing (optionally writable) directory.

    Raises:
        ConfigurationError: Naming ``context``
    """
    text = str(path).strip()
    if not text:
        raise ConfigurationError(f"{context} is empty.", missing=[context])
    if not os.path.isdir(text):
        raise ConfigurationError(f"{context} [{text}] does not exist.", missing=[context])
    if must_be_writable and not os.access(text, os.W_OK):
        raise ConfigurationError(f"{context} [{text}] is not writable.", missing=[context])


def extract_restore_size(stats: Any) -> int | None:
    if not isinstance(stats, dict):
        return None
    for key in ("total_size", "total_size_bytes", "total_size_in_bytes"):
        value = stats.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    return None


def required_space(expected_bytes: int | None, scope: RestoreScope) -> int | None:
    """Bytes that must be free: 115% of the restore plus a 2 GiB reserve, or the reserve alone for db restores."""
    if not scope.includes_files:
        return SPACE_RESERVE_BYTES
    if expected_bytes is None:
        return None
    return int(math.ceil(expected_bytes * SPACE_OVERHEAD_FACTOR + SPACE_RESERVE_BYTES))


async def preflight_space(
    restic: Any,
    snapshot_id: str,
    project_root: Path,
    scope: RestoreScope,
    timeout: int,
) -> Dict[str, Any]:
    """
    Estimate the restore size and compare it with the free space.

    The size comes from `restic stats --mode restore-size`, falling back
    to the current size of the project root.

    Returns:
        Step meta with free_bytes, expected_bytes, required_bytes, source and ok
    """
    start_meta = datetime.now(UTC)
    expected: int | None = None
    source: str | None = None
    stats_meta: Dict[str, Any] | None = None

    if scope.includes_files:
        try:
            result = await restic.stats_restore_size(
                snapshot_id,
                timeout=min(STATS_TIMEOUT_SECONDS, timeout),
                max_output_bytes=META_OUTPUT_LIMIT,
            )
        except ConfigurationError as e:
            stats_meta = {"exit_code": 1, "stderr": truncate_output(e.message, META_OUTPUT_LIMIT)}
        else:
            stats_meta = step_meta(result)
            if result.ok:
                expected = extract_restore_size(result.parsed_json)
                source = "restic_stats" if expected is not None else None

        if expected is None:
            expected = await directory_size(project_root)
            source = "du" if expected is not None else None

    free = free_bytes(project_root)
    required = required_space(expected, scope)
    ok = free is not None and required is not None and free >= required

    logger.info(
        "restore_space_checked",
        free_bytes=free,
        expected_bytes=expected,
        required_bytes=required,
        ok=ok,
    )

    return {
        "exit_code": 0 if ok else 1,
        "duration_ms": int((datetime.now(UTC) - start_meta).total_seconds() * 1000),
        "free_bytes": free,
        "expected_bytes": expected,
        "required_bytes": required,
        "source": source,
        "stats": stats_meta,
        "ok": ok,
    }


# ============================================================================
# Staging
# ============================================================================

def _sibling(project_root: Path, suffix: str) -> Path:
    return Path(str(project_root).rstrip(os.sep) + suffix)


def make_staging_target_dir(project_root: Path, run_id: str, stamp: str) -> Path:
    return ensure_dir(_sibling(project_root, f".__restored_{run_id}_{stamp}"))


def make_staging_swap_dir(project_root: Path, run_id: str, stamp: str) -> Path:
    path = _sibling(project_root, f".__swap_{run_id}_{stamp}")
    if path.is_dir():
        raise PipelineError("Staging swap directory already exists.", details={"path": str(path)})
    return path


def make_rollback_dir(project_root: Path, stamp: str) -> Path:
    return _sibling(project_root, f".__before_restore_{stamp}")


def restored_project_path(restore_dir: Path, project_root: Path) -> Path:
    """Where restic put the project root inside a restore target."""
    return restore_dir / str(project_root).lstrip(os.sep)


def validate_staging(staging_dir: Path, scope: RestoreScope) -> Dict[str, Any]:
    """Check that a staged tree looks like a deployable project."""
    start = datetime.now(UTC)
    errors: List[str] = []

    if not staging_dir.is_dir():
        errors.append("Staging directory was not found.")

    if scope.includes_files:
        if not (staging_dir / "artisan").is_file():
            errors.append("artisan file missing in staged project.")
        if not (staging_dir / "composer.json").is_file():
            errors.append("composer.json missing in staged project.")
        if not (staging_dir / "vendor" / "autoload.php").is_file():
            errors.append("vendor/autoload.php missing in staged project.")

    if scope.includes_db and not (staging_dir / DUMP_RELATIVE_PATH).is_file():
        errors.append("Database dump file missing in staged project.")

    return {
        "exit_code": 0 if not errors else 1,
        "duration_ms": int((datetime.now(UTC) - start).total_seconds() * 1000),
        "errors": errors,
    }


# ============================================================================
# Cutover and rollback
# ============================================================================

def _failed_step(primary: Dict[str, Any], secondary: Dict[str, Any], message: str, **extra: Any) -> Dict[str, Any]:
    merged = dict(primary)
    merged.update(
        exit_code=1,
        stderr=(str(primary.get("stderr") or "") + "\n" + message).strip(),
        secondary=secondary,
        **extra,
    )
    return merged


def swap_directories(project_root: Path, staging_dir: Path, rollback_dir: Path) -> Dict[str, Any]:
    """
    Move the live tree aside and the staged tree into its place.

    If the second move fails the live tree is moved back.
    """
    swap = move_path(project_root, rollback_dir)
    if swap["exit_code"] != 0:
        return _failed_step(swap, {}, "Failed to move current project root.")

    move = move_path(staging_dir, project_root)
    if move["exit_code"] != 0:
        rollback = move_path(rollback_dir, project_root)
        return _failed_step(swap, move, "Failed to move staged project into place.", rollback=rollback)

    return {
        "exit_code": 0,
        "rollback_path": str(rollback_dir),
        "swap": swap,
        "move": move,
    }


def preserve_env_from_rollback(rollback_dir: Path, project_root: Path) -> Dict[str, Any]:
    """Copy the live .env over the restored one."""
    start = datetime.now(UTC)
    source = rollback_dir / ".env"
    target = project_root / ".env"
    meta: Dict[str, Any] = {"source": str(source), "target": str(target)}

    if not source.is_file():
        meta.update(exit_code=1, stderr="Source .env not found in rollback directory.")
    else:
        try:
            shutil.copy2(source, target)
            meta.update(exit_code=0, stderr="")
        except OSError:
            meta.update(exit_code=1, stderr="Failed to copy .env from rollback directory.")

    meta["duration_ms"] = int((datetime.now(UTC) - start).total_seconds() * 1000)
    return meta


def cleanup_runtime_artifacts(project_root: Path) -> Dict[str, Any]:
    """Empty compiled views, caches, sessions and test artifacts."""
    start = datetime.now(UTC)
    framework = project_root / "storage" / "framework"
    paths = [framework / name for name in RUNTIME_CACHE_DIRS]
    errors: List[Dict[str, Any]] = []

    for path in paths:
        if not path.is_dir():
            continue
        path_errors = clear_directory(path)
        if path_errors:
            errors.append({"path": str(path), "errors": path_errors})

    return {
        "exit_code": 0 if not errors else 1,
        "duration_ms": int((datetime.now(UTC) - start).total_seconds() * 1000),
        "paths": [str(p) for p in paths],
        "errors": errors,
    }


def attempt_rollback(project_root: Path, rollback_dir: Path, stamp: str) -> Dict[str, Any]:
    """Move the failed tree aside and put the previous tree back."""
    failed_dir = _sibling(project_root, f".__failed_restore_{stamp}")

    if project_root.is_dir():
        move_failed = move_path(project_root, failed_dir)
    else:
        move_failed = {"exit_code": 0, "stdout": "", "stderr": ""}

    restore = move_path(rollback_dir, project_root)

    return {
        "exit_code": 0 if move_failed["exit_code"] == 0 and restore["exit_code"] == 0 else 1,
        "failed_path": str(failed_dir),
        "move_failed": move_failed,
        "restore": restore,
    }


async def rsync_files(source: Path, project_root: Path, timeout: int) -> Dict[str, Any]:
    """Sync a staged tree over the live one, keeping .env and the maintenance marker."""
    rsync = find_binary(["rsync"])
    command = [
        rsync,
        "-a",
        "--delete",
        "--exclude=.env",
        "--exclude=storage/framework/down",
        str(source).rstrip(os.sep) + os.sep,
        str(project_root).rstrip(os.sep) + os.sep,
    ]
    result = await run_command(command, cwd=project_root, timeout=timeout, max_output_bytes=META_OUTPUT_LIMIT)
    return step_meta(result)


# ============================================================================
# Pipeline
# ============================================================================

class RestorePipeline:
    """
    One restore run.

    The flags (maintenance_started, swap_completed, db_wiped...) record
    how far the cutover got; the rollback and the final cleanup read
    them to undo exactly what was done.
    """

    def __init__(
        self,
        settings: Settings,
        state: Dict[str, Any],
        handle: OperationLockHandle,
        recorder: RunRecorder,
        snapshot_id: str,
        scope: RestoreScope,
        mode: RestoreMode | None,
        safety_backup: bool,
        connection_name: str,
    ):
        self.settings = settings
        self.state = state
        self.handle = handle
        self.recorder = recorder
        self.run: RunState = recorder.run
        self.restic = state["restic"]
        self.maintenance = state["maintenance"]
        self.snapshot_id = snapshot_id
        self.scope = scope
        self.mode = mode
        self.safety_backup = safety_backup
        self.connection_name = connection_name
        self.project_root = Path(settings.project_root)

        self.snapshot: Dict[str, Any] = {}
        self.driver = None
        self.stage_target: Path | None = None
        self.staging_dir: Path | None = None
        self.rollback_dir: Path | None = None
        self.safety_dump: Path | None = None
        self.down_secret: str | None = None
        self.cleanup_paths: List[Path] = []

        self.maintenance_started = False
        self.maintenance_completed = False
        self.swap_completed = False
        self.db_wiped = False

    async def _begin(self, step: str) -> str:
        self.run.begin(step)
        await self.handle.heartbeat({"step": step})
        return step

    async def _record(self, step: str, data: Any) -> None:
        self.run.record(step, data)
        await self.recorder.save()

    def _get_driver(self):
        if self.driver is None:
            config = self.settings.connection(self.connection_name)
            self.driver = self.state["driver_factory"](config, self.settings)
        return self.driver

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    async def preflight(self) -> None:
        await self._begin("preflight")

        version = await self.restic.version()
        await self._record("restic_version", step_meta(version, META_OUTPUT_LIMIT))
        if not version.ok:
            raise ProcessError(version)

        listing = await self.restic.snapshots(timeout=self.settings.timeout)
        await self._record("restic_snapshots", step_meta(listing, META_OUTPUT_LIMIT))
        if not listing.ok or not isinstance(listing.parsed_json, list):
            raise ProcessError(listing, "Unable to load snapshots from restic.")

        self.snapshot = resolve_snapshot(listing.parsed_json, self.snapshot_id)
        self.run.set("snapshot", self.snapshot)
        await self.recorder.save()

        if self.scope.includes_files:
            ensure_existing_directory(self.project_root, must_be_writable=True, context="project_root")

        if self.scope.includes_db:
            await self._get_driver().verify()

        if self.scope.includes_files and self.mode == RestoreMode.ATOMIC:
            step = await self._begin("preflight_fs")
            parent = self.project_root.parent
            same_fs = same_filesystem(self.project_root, parent)
            await self._record(
                step,
                {
                    "exit_code": 0 if same_fs else 1,
                    "same_filesystem": same_fs,
                    "project_root": str(self.project_root),
                    "staging_parent": str(parent),
                    "duration_ms": 0,
                },
            )
            if not same_fs:
                raise PipelineError("Atomic swap requires staging on the same filesystem.")

        step = await self._begin("preflight_space")
        space = await preflight_space(
            self.restic,
            self.snapshot["id"],
            self.project_root,
            self.scope,
            self.settings.timeout,
        )
        await self._record(step, space)
        if not space["ok"]:
            raise PipelineError("Insufficient disk space for restore.")

    async def stage(self) -> None:
        step = await self._begin("stage_restic_restore")
        self.stage_target = make_staging_target_dir(self.project_root, self.run.run_id, timestamp())
        self.cleanup_paths.append(self.stage_target)

        # A database-only restore needs nothing but the dump
        include = None
        if not self.scope.includes_files:
            include = [str(self.project_root / DUMP_RELATIVE_PATH)]

        result = await self.restic.restore(
            self.snapshot["id"],
            self.stage_target,
            include=include,
            timeout=self.settings.timeout,
            max_output_bytes=META_OUTPUT_LIMIT,
            heartbeat=step_heartbeat(self.handle, step),
            heartbeat_every=HEARTBEAT_EVERY_SECONDS,
        )
        await self._record(step, step_meta(result))
        if not result.ok:
            raise ProcessError(result)

        restored = restored_project_path(self.stage_target, self.project_root)
        if not restored.is_dir():
            raise PipelineError("Restored project path was not found in the snapshot.")

        self.run.begin("stage_prepare")
        self.staging_dir = make_staging_swap_dir(self.project_root, self.run.run_id, timestamp())
        self.cleanup_paths.append(self.staging_dir)
        move = move_path(restored, self.staging_dir)
        self.run.section("restore").update(
            staging_target=str(self.stage_target),
            staging_dir=str(self.staging_dir),
        )
        await self._record("stage_prepare", move)
        if move["exit_code"] != 0:
            raise PipelineError("Failed to prepare staging directory.")

        step = await self._begin("stage_validate")
        validation = validate_staging(self.staging_dir, self.scope)
        await self._record(step, validation)
        if validation["exit_code"] != 0:
            raise PipelineError("Staging validation failed.", details={"errors": validation["errors"]})

    async def run_safety_backup(self) -> None:
        """Dump and snapshot the live state before anything is replaced."""
        step = await self._begin("safety_backup")
        dump_path = self.project_root / DUMP_RELATIVE_PATH
        dump = await self._get_driver().dump(dump_path)

        tags = [
            "safety-before-restore",
            "restore:" + (self.snapshot.get("short_id") or "unknown"),
            f"run:{self.run.run_id}",
            "trigger:restore",
        ]
        backup = await self.restic.backup(
            str(self.project_root),
            tags,
            exclude=self.settings.exclude_paths,
            timeout=self.settings.timeout,
            max_output_bytes=META_OUTPUT_LIMIT,
            heartbeat=step_heartbeat(self.handle, step),
            heartbeat_every=HEARTBEAT_EVERY_SECONDS,
        )

        ok = dump.ok and backup.ok
        await self._record(
            step,
            {
                "exit_code": 0 if ok else 1,
                "dump": dump.as_meta(),
                "backup": step_meta(backup),
                "tags": tags,
            },
        )
        if not ok:
            raise PipelineError("Safety backup failed.")

        # Keep a copy outside the project tree; an rsync cutover overwrites the original
        if dump_path.is_file() and self.stage_target is not None:
            copy = self.stage_target / SAFETY_DUMP_NAME
            shutil.copy2(dump_path, copy)
            self.safety_dump = copy
            self.run.section("restore")["safety_dump_path"] = str(copy)
            await self.recorder.save()

    async def maintenance_down(self) -> None:
        step = await self._begin("cutover_down")
        self.down_secret = generate_down_secret()
        self.run.section("restore").update(
            secret=self.down_secret,
            bypass_path="/" + self.down_secret,
        )
        result = await self.maintenance.down(self.project_root, self.down_secret)
        await self._record(step, result)
        if result["exit_code"] != 0:
            raise PipelineError("Failed to enable maintenance mode.")
        self.maintenance_started = True

    async def files_cutover(self) -> None:
        step = await self._begin("cutover_swap")

        if self.mode == RestoreMode.ATOMIC:
            self.rollback_dir = make_rollback_dir(self.project_root, timestamp())
            swap = swap_directories(self.project_root, self.staging_dir, self.rollback_dir)
            self.run.section("restore")["rollback_dir"] = str(self.rollback_dir)
            await self._record(step, swap)
            if swap["exit_code"] != 0:
                raise PipelineError("Atomic swap failed.")

            self.swap_completed = True
            self.run.record("env_preserve", preserve_env_from_rollback(self.rollback_dir, self.project_root))

            if self.safety_dump is None:
                candidate = self.rollback_dir / DUMP_RELATIVE_PATH
                if candidate.is_file():
                    self.safety_dump = candidate
                    self.run.section("restore")["safety_dump_path"] = str(candidate)
            await self.recorder.save()

            # The restored tree carries no maintenance marker
            step = await self._begin("cutover_down_after_swap")
            result = await self.maintenance.down(self.project_root, self.down_secret)
            await self._record(step, result)
            if result["exit_code"] != 0:
                raise PipelineError("Failed to enable maintenance mode after swap.")
        else:
            result = await rsync_files(self.staging_dir, self.project_root, self.settings.timeout)
            await self._record(step, result)
            if result["exit_code"] != 0:
                raise PipelineError("File restore failed.")

    def staged_dump_path(self) -> Path:
        """The restored dump: still in staging, or in the live tree after an atomic swap."""
        if self.staging_dir is not None:
            staged = self.staging_dir / DUMP_RELATIVE_PATH
            if staged.is_file():
                return staged
        return self.project_root / DUMP_RELATIVE_PATH

    async def db_cutover(self) -> None:
        driver = self._get_driver()

        step = await self._begin("cutover_db_wipe")
        wipe = await driver.wipe()
        await self._record(step, wipe)
        if wipe["exit_code"] != 0:
            raise PipelineError("Database wipe failed.")
        self.db_wiped = True

        step = await self._begin("cutover_db_import")
        result = await driver.import_dump(self.staged_dump_path(), cwd=self.project_root)
        await self._record(step, result)
        if result["exit_code"] != 0:
            raise PipelineError("Database restore failed.")

    async def post_cutover(self) -> None:
        if self.scope.includes_files:
            step = await self._begin("runtime_cleanup")
            await self._record(step, cleanup_runtime_artifacts(self.project_root))

            step = await self._begin("storage_link")
            await self._record(step, await self.maintenance.storage_link(self.project_root))

            step = await self._begin("cutover_optimize_clear")
            await self._record(step, await self.maintenance.optimize_clear(self.project_root))

            step = await self._begin("cutover_queue_restart")
            await self._record(step, await self.maintenance.queue_restart(self.project_root))

        if self.maintenance_started:
            step = await self._begin("cutover_up")
            result = await self.maintenance.up(self.project_root)
            await self._record(step, result)
            if result["exit_code"] != 0:
                raise PipelineError("Failed to disable maintenance mode.")
            self.maintenance_completed = True

    async def schedule_rollback_cleanup(self) -> None:
        """Queue removal of the rollback directory once its retention window passes."""
        if not (self.swap_completed and self.rollback_dir is not None):
            return

        not_before = datetime.now(UTC) + timedelta(hours=ROLLBACK_CLEANUP_DELAY_HOURS)
        scheduled = bool(self.state.get("queue_enabled"))
        if scheduled:
            from resticops.queue import dispatch

            await dispatch(
                self.recorder.db,
                "cleanup_rollback_dir",
                {
                    "path": str(self.rollback_dir),
                    "run_id": self.run.run_id,
                    "not_before": not_before.timestamp(),
                },
                delay=ROLLBACK_CLEANUP_DELAY_HOURS * 3600,
            )

        self.run.set(
            "cleanup",
            {
                "scheduled": scheduled,
                "path": str(self.rollback_dir),
                "not_before": not_before.isoformat(),
            },
        )

    async def rollback(self) -> None:
        """Undo the cutover after a failure. Outcomes are recorded, never raised."""
        attempted = False
        success = None
        db_attempted = False
        db_success = None
        db_source = None

        if self.maintenance_started and self.swap_completed and self.rollback_dir is not None:
            attempted = True
            meta = attempt_rollback(self.project_root, self.rollback_dir, timestamp())
            self.run.record("rollback_swap", meta)
            success = meta["exit_code"] == 0

        if self.db_wiped and self.scope.includes_db:
            db_attempted = True
            meta = await self._rollback_database()
            self.run.record("rollback_db_restore", meta)
            db_success = meta["exit_code"] == 0
            db_source = meta.get("dump_source")

        self.run.set(
            "rollback",
            {
                "attempted": attempted,
                "success": success,
                "db_attempted": db_attempted,
                "db_success": db_success,
                "db_source": db_source,
            },
        )

        logger.warning(
            "restore_rolled_back",
            run_id=self.run.run_id,
            files=success,
            database=db_success,
        )

    async def _rollback_database(self) -> Dict[str, Any]:
        start = datetime.now(UTC)
        dump_path = self.safety_dump
        source = "safety" if dump_path is not None and dump_path.name == SAFETY_DUMP_NAME else "rollback_dir"
        if dump_path is None or not dump_path.is_file():
            # staging holds the snapshot being restored; project holds whatever the live tree now has
            dump_path = self.staged_dump_path()
            in_staging = self.staging_dir is not None and dump_path.is_relative_to(self.staging_dir)
            source = "staging" if in_staging else "project"
        if not dump_path.is_file():
            return {
                "exit_code": 1,
                "duration_ms": int((datetime.now(UTC) - start).total_seconds() * 1000),
                "stderr": "Safety dump not available for rollback.",
                "command": "rollback_db_restore",
                "dump_source": None,
            }

        try:
            result = await self._get_driver().import_dump(dump_path, cwd=self.project_root)
        except ResticOpsError as e:
            error = e.message
        except Exception as e:
            logger.exception("rollback_db_import_raised", run_id=self.run.run_id)
            error = str(e) or e.__class__.__name__
        else:
            result["dump_path"] = str(dump_path)
            result["dump_source"] = source
            return result

        return {
            "exit_code": 1,
            "duration_ms": int((datetime.now(UTC) - start).total_seconds() * 1000),
            "stderr": sanitize_error_message(error, self.settings),
            "command": "rollback_db_restore",
            "dump_path": str(dump_path),
            "dump_source": source,
        }

    async def finalize(self) -> None:
        """Lift maintenance if the run left it on and drop staging trees."""
        if self.maintenance_started and not self.maintenance_completed:
            try:
                result = await self.maintenance.up(self.project_root)
                self.run.record("cutover_up", result)
                await self.recorder.save()
            except Exception as e:
                logger.error("maintenance_up_failed", run_id=self.run.run_id, error=str(e))

        for path in self.cleanup_paths:
            errors = remove_tree(path)
            if errors:
                logger.warning("staging_cleanup_incomplete", path=str(path), errors=errors[:10])

    async def execute(self) -> None:
        try:
            await self.preflight()
            await self.stage()
            if self.safety_backup:
                await self.run_safety_backup()
            await self.maintenance_down()
            if self.scope.includes_files:
                await self.files_cutover()
            if self.scope.includes_db:
                await self.db_cutover()
            await self.post_cutover()
            await self.schedule_rollback_cleanup()
            await self.recorder.succeed()
        except Exception as e:
            try:
                await self.rollback()
            except Exception as rollback_error:
                logger.exception("restore_rollback_raised", run_id=self.run.run_id)
                self.run.set("rollback_error", sanitize_error_message(str(rollback_error), self.settings))
            await self.recorder.fail(e)
            raise
        finally:
            await self.finalize()


async def run_restore(
    settings: Settings,
    state: Dict[str, Any],
    snapshot_id: str,
    scope: str | RestoreScope | None = RestoreScope.FILES,
    mode: str | RestoreMode | None = RestoreMode.RSYNC,
    safety_backup: bool = True,
    trigger: str | None = None,
    connection: str | None = None,
    attempt: int = 1,
) -> str:
    """
    Restore a snapshot over the live project and/or database.

    Args:
        settings: Settings snapshot
        state: Runtime state from initialize_state()
        snapshot_id: Full id, short id or id prefix
        scope: db, files or both
        mode: rsync or atomic (ignored for db)
        safety_backup: Dump and snapshot the live state first
        trigger: manual, schedule or system
        connection: Database connection name (default: settings default)
        attempt: Queue attempt number (restores are never requeued)

    Returns:
        The run id; a skipped run's id when the lock was busy

    Raises:
        ResticOpsError: Any step failure, after rollback and recording
    """
    trigger = normalize_trigger(trigger)
    scope = normalize_scope(scope)
    mode = normalize_mode(mode, scope)
    connection_name = connection or settings.default_connection

    base_meta = {
        "trigger": trigger,
        "snapshot_id": snapshot_id,
        "scope": scope.value,
        "mode": mode.value if mode else None,
        "safety_backup": safety_backup,
    }

    handle = await state["lock"].acquire(
        RunType.RESTORE.value,
        lock_ttl(RESTORE_LOCK_TTL_SECONDS, settings.timeout),
        block_seconds=0,
        context=dict(base_meta),
    )
    if handle is None:
        run_id = await record_lock_unavailable(state, RunType.RESTORE.value, base_meta)
        logger.info("restore_skipped", run_id=run_id, reason="lock_unavailable")
        return run_id

    run = RunState(RunType.RESTORE.value)
    run.update(
        **base_meta,
        project_root=str(settings.project_root),
        connection=connection_name,
        host=hostname(),
        app_env=settings.app_env,
    )

    try:
        async with aiosqlite.connect(state["state_db_path"]) as db:
            recorder = RunRecorder(db, settings, run)
            await recorder.start()
            await handle.set_run_id(run.run_id)

            logger.info("restore_started", run_id=run.run_id, scope=scope.value, snapshot_id=snapshot_id)

            pipeline = RestorePipeline(
                settings,
                state,
                handle,
                recorder,
                snapshot_id,
                scope,
                mode,
                safety_backup,
                connection_name,
            )
            await pipeline.execute()
    finally:
        await handle.release()

    logger.info("restore_finished", run_id=run.run_id)

    return run.run_id
