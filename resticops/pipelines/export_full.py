# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Full disaster-recovery export and plain snapshot export.

Both restore one snapshot into a scratch tree, rename the project subtree
to the archive's top-level folder and pack it as tar.gz. The full export
adds README.txt and TOOLS/ and becomes the baseline for delta exports.
"""

from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict

import aiosqlite
import structlog

from resticops.bundle import (
    SNAPSHOT_MANIFEST_NAME,
    bundle_name,
    write_json,
    write_readme_full,
    write_tools,
)
from resticops.config import RunType, Settings
from resticops.db.base import META_OUTPUT_LIMIT
from resticops.exceptions import ConfigurationError, PipelineError
from resticops.fs import apply_excludes, move_path, normalize_path_list, remove_tree
from resticops.meta import RunState
from resticops.pipelines.archive import (
    ARCHIVE_FORMAT,
    DEFAULT_KEEP_HOURS,
    EXPORT_LOCK_TTL_SECONDS,
    discard_partial_archive,
    discard_workspace,
    expires_at_for,
    find_by_id,
    load_snapshots,
    pack_bundle,
    prepare_workspace,
    resolve_latest,
    schedule_archive_cleanup,
)
from resticops.pipelines.common import (
    HEARTBEAT_EVERY_SECONDS,
    LOCK_BLOCK_SECONDS,
    RunRecorder,
    lock_ttl,
    normalize_trigger,
    requeue_or_return,
    step_heartbeat,
    timestamp,
)
from resticops.pipelines.restore import restored_project_path
from resticops.process import step_meta
from resticops.runs import set_baseline

logger = structlog.get_logger()

KIND_FULL = "dr-full"
KIND_SNAPSHOT = "snapshot"


async def _export_tree(
    settings: Settings,
    state: Dict[str, Any],
    run_type: RunType,
    kind: str,
    snapshot_id: str | None,
    keep_hours: int,
    include_env: bool,
    trigger: str,
    requeue_payload: Dict[str, Any],
    attempt: int,
) -> str | None:
    """
    Restore, rename, decorate and pack one snapshot.

    The full export decorates the tree with README.txt and TOOLS/ and
    moves the baseline; the snapshot export writes a small manifest.
    """
    is_full = run_type == RunType.EXPORT_FULL
    handle = await state["lock"].acquire(
        run_type.value,
        lock_ttl(EXPORT_LOCK_TTL_SECONDS, settings.timeout),
        LOCK_BLOCK_SECONDS,
        {"snapshot_id": snapshot_id, "trigger": trigger},
    )
    if handle is None:
        await requeue_or_return(state, run_type.value, requeue_payload, attempt)
        return None

    exclude_paths = normalize_path_list(settings.exclude_paths) if is_full else []
    run = RunState(run_type.value)
    run.update(trigger=trigger, snapshot_id=snapshot_id)
    export = run.section("export")
    export.update(
        format=ARCHIVE_FORMAT,
        include_env=include_env,
        keep_hours=keep_hours,
        kind="full" if is_full else "snapshot",
    )
    if is_full:
        export["exclude_paths"] = exclude_paths

    restic = state["restic"]
    work_dir: Path | None = None
    archive_path: Path | None = None

    try:
        async with aiosqlite.connect(state["state_db_path"]) as db:
            recorder = RunRecorder(db, settings, run)
            try:
                await recorder.start()
                await handle.set_run_id(run.run_id)

                logger.info("export_started", run_id=run.run_id, type=run_type.value, snapshot_id=snapshot_id)

                snapshots = await load_snapshots(restic, run, recorder, settings.timeout)
                if snapshot_id:
                    snapshot = find_by_id(snapshots, snapshot_id)
                    if snapshot is None:
                        raise PipelineError("Snapshot was not found in the repository.")
                else:
                    snapshot = resolve_latest(snapshots)
                    if snapshot is None:
                        raise PipelineError("No snapshots found in the repository.")

                snapshot_id = snapshot["id"]
                run.update(snapshot_id=snapshot_id, snapshot_short_id=snapshot_id[:8])
                if is_full:
                    export["baseline_snapshot_id"] = snapshot_id

                project_root = Path(settings.project_root)
                stamp = timestamp()
                top_folder = bundle_name(settings.app_name, settings.app_env, kind, snapshot_id, stamp)
                archive_name = f"{top_folder}.tar.gz"

                work_dir, restore_dir, bundle_dir = prepare_workspace(settings, run.run_id, stamp)
                archive_path = Path(settings.exports_dir) / archive_name
                export.update(
                    archive_name=archive_name,
                    archive_path=str(archive_path),
                    work_dir=str(work_dir),
                )
                await recorder.save()

                step = run.begin("restic_restore")
                await handle.heartbeat({"step": step})
                result = await restic.restore(
                    snapshot_id,
                    restore_dir,
                    exclude=exclude_paths or None,
                    timeout=settings.timeout,
                    max_output_bytes=META_OUTPUT_LIMIT,
                    heartbeat=step_heartbeat(handle, step),
                    heartbeat_every=HEARTBEAT_EVERY_SECONDS,
                )
                run.record(step, step_meta(result))
                await recorder.save()
                if not result.ok:
                    raise PipelineError("Restic restore failed.")

                restored = restored_project_path(restore_dir, project_root)
                if not restored.is_dir():
                    raise PipelineError("Restored project path was not found in the snapshot.")

                target_dir = bundle_dir / top_folder
                move = move_path(restored, target_dir)
                if move["exit_code"] != 0:
                    raise PipelineError("Failed to move restored project directory into bundle.")

                if exclude_paths:
                    removed = apply_excludes(target_dir, exclude_paths)
                    if removed:
                        export["excluded_paths"] = removed

                if not include_env:
                    env_file = target_dir / ".env"
                    if env_file.is_file() or env_file.is_symlink():
                        remove_tree(env_file)

                generated_at = datetime.now(UTC).isoformat()
                export["generated_at"] = generated_at

                if is_full:
                    await write_readme_full(target_dir, {"snapshot_id": snapshot_id, "generated_at": generated_at})
                    await write_tools(target_dir)
                else:
                    await write_json(
                        target_dir / SNAPSHOT_MANIFEST_NAME,
                        {
                            "snapshot_id": snapshot_id,
                            "generated_at": generated_at,
                            "app": settings.app_name,
                            "env": settings.app_env,
                            "project_root": str(project_root),
                            "include_env": include_env,
                        },
                    )
                await recorder.save()

                facts = await pack_bundle(run, recorder, handle, bundle_dir, top_folder, archive_path)
                export.update(facts)

                expires_at = expires_at_for(keep_hours)
                export["expires_at"] = expires_at.isoformat()

                if is_full:
                    await set_baseline(db, snapshot_id)

                await schedule_archive_cleanup(state, recorder, expires_at)
                await recorder.succeed()
            except Exception as e:
                await recorder.fail(e)
                discard_partial_archive(archive_path)
                raise
    finally:
        discard_workspace(work_dir)
        await handle.release()

    logger.info("export_finished", run_id=run.run_id, type=run_type.value, archive=str(archive_path))

    return run.run_id


async def run_full_export(
    settings: Settings,
    state: Dict[str, Any],
    snapshot_id: str | None = None,
    keep_hours: int = DEFAULT_KEEP_HOURS,
    include_env: bool = False,
    trigger: str | None = None,
    attempt: int = 1,
) -> str | None:
    """
    Build a full disaster-recovery archive and make its snapshot the baseline.

    Args:
        settings: Settings snapshot
        state: Runtime state from initialize_state()
        snapshot_id: Snapshot to export (default: the latest)
        keep_hours: Hours before the archive is deleted (at least 1)
        include_env: Keep the project's .env in the archive
        trigger: manual, schedule or system
        attempt: Queue attempt number, drives the requeue backoff

    Returns:
        The run id, or None if the lock was busy
    """
    trigger = normalize_trigger(trigger)
    return await _export_tree(
        settings,
        state,
        RunType.EXPORT_FULL,
        KIND_FULL,
        snapshot_id,
        keep_hours,
        include_env,
        trigger,
        {
            "snapshot_id": snapshot_id,
            "keep_hours": keep_hours,
            "include_env": include_env,
            "trigger": trigger,
        },
        attempt,
    )


async def run_snapshot_export(
    settings: Settings,
    state: Dict[str, Any],
    snapshot_id: str,
    include_env: bool = False,
    keep_hours: int = DEFAULT_KEEP_HOURS,
    trigger: str | None = None,
    attempt: int = 1,
) -> str | None:
    """
    Export a chosen snapshot as a downloadable archive.

    The baseline is left unchanged.

    Raises:
        ConfigurationError: If snapshot_id is empty
    """
    if not (snapshot_id or "").strip():
        raise ConfigurationError("Snapshot ID is required for export.", missing=["snapshot_id"])

    trigger = normalize_trigger(trigger)
    return await _export_tree(
        settings,
        state,
        RunType.EXPORT_SNAPSHOT,
        KIND_SNAPSHOT,
        snapshot_id.strip(),
        keep_hours,
        include_env,
        trigger,
        {
            "snapshot_id": snapshot_id,
            "include_env": include_env,
            "keep_hours": keep_hours,
            "trigger": trigger,
        },
        attempt,
    )
