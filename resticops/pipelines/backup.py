# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup pipeline: database dump, restic snapshot, retention.

The dump is written inside the project tree, so the snapshot taken right
after it carries both the files and the database.
"""

from pathlib import Path
from typing import Any, Dict, List

import aiosqlite
import structlog

from resticops.config import RunType, Settings
from resticops.db.base import DUMP_RELATIVE_PATH, META_OUTPUT_LIMIT
from resticops.exceptions import PipelineError, ProcessError
from resticops.meta import RunState
from resticops.pipelines.common import (
    HEARTBEAT_EVERY_SECONDS,
    LOCK_BLOCK_SECONDS,
    RunRecorder,
    build_tags,
    hostname,
    lock_ttl,
    normalize_tags,
    normalize_trigger,
    requeue_or_return,
    step_heartbeat,
)
from resticops.process import step_meta

logger = structlog.get_logger()

BACKUP_LOCK_TTL_SECONDS = 7200


def backup_paths(settings: Settings) -> List[str]:
    """Configured include paths resolved against the project root, or the root itself."""
    root = Path(settings.project_root)
    paths: List[str] = []
    for item in settings.include_paths:
        item = str(item).strip()
        if not item:
            continue
        path = Path(item)
        paths.append(str(path if path.is_absolute() else root / path))
    return paths or [str(root)]


async def run_backup(
    settings: Settings,
    state: Dict[str, Any],
    tags: List[str] | None = None,
    trigger: str | None = None,
    connection: str | None = None,
    run_retention: bool = True,
    attempt: int = 1,
) -> str | None:
    """
    Dump the database, snapshot the project and apply retention.

    Args:
        settings: Settings snapshot
        state: Runtime state from initialize_state()
        tags: Extra snapshot tags
        trigger: manual, schedule or system
        connection: Database connection name (default: settings default)
        run_retention: Apply the retention policy after the snapshot
        attempt: Queue attempt number, drives the requeue backoff

    Returns:
        The run id, or None if the lock was busy

    Raises:
        ResticOpsError: Any step failure, after it is recorded on the run
    """
    trigger = normalize_trigger(trigger)
    tags = normalize_tags(tags)
    connection_name = connection or settings.default_connection

    handle = await state["lock"].acquire(
        RunType.BACKUP.value,
        lock_ttl(BACKUP_LOCK_TTL_SECONDS, settings.timeout),
        LOCK_BLOCK_SECONDS,
        {"trigger": trigger, "tags": tags, "connection": connection_name},
    )

    if handle is None:
        await requeue_or_return(
            state,
            "backup",
            {
                "tags": tags,
                "trigger": trigger,
                "connection": connection,
                "run_retention": run_retention,
            },
            attempt,
        )
        return None

    run = RunState(RunType.BACKUP.value)
    restic = state["restic"]

    try:
        async with aiosqlite.connect(state["state_db_path"]) as db:
            recorder = RunRecorder(db, settings, run)
            try:
                project_root = Path(settings.project_root)
                dump_path = project_root / DUMP_RELATIVE_PATH

                run.update(
                    trigger=trigger,
                    tags=tags,
                    project_root=str(project_root),
                    dump_path=str(dump_path),
                    connection=connection_name,
                    host=hostname(),
                    app_env=settings.app_env,
                )
                await recorder.start()
                await handle.set_run_id(run.run_id)

                logger.info("backup_started", run_id=run.run_id, trigger=trigger)

                # Step 1: database dump
                step = run.begin("dump")
                await handle.heartbeat({"step": step})
                driver = state["driver_factory"](settings.connection(connection_name), settings)
                dump = await driver.dump(dump_path)
                run.record(step, dump.as_meta())
                for warning in dump.warnings:
                    run.warn(warning)
                await recorder.save()

                if not dump.ok:
                    raise PipelineError("Database dump failed.")

                # Step 2: snapshot
                step = run.begin("restic_backup")
                await handle.heartbeat({"step": step})
                snapshot_tags = build_tags(settings, tags, trigger)
                run.set("tags", snapshot_tags)
                result = await restic.backup(
                    backup_paths(settings),
                    snapshot_tags,
                    exclude=settings.exclude_paths,
                    timeout=settings.timeout,
                    max_output_bytes=META_OUTPUT_LIMIT,
                    heartbeat=step_heartbeat(handle, step),
                    heartbeat_every=HEARTBEAT_EVERY_SECONDS,
                )
                run.record(step, step_meta(result))
                await recorder.save()

                if not result.ok:
                    raise ProcessError(result, f"Restic process failed with exit code {result.exit_code}.")

                # Step 3: retention
                if not run_retention:
                    run.record("retention", {"skipped": True, "reason": "disabled"})
                elif settings.retention.is_empty():
                    run.record("retention", {"skipped": True, "reason": "empty_retention"})
                else:
                    step = run.begin("retention")
                    await handle.heartbeat({"step": step})
                    result = await restic.forget(
                        settings.retention,
                        prune=True,
                        timeout=settings.timeout,
                        max_output_bytes=META_OUTPUT_LIMIT,
                        heartbeat=step_heartbeat(handle, step),
                        heartbeat_every=HEARTBEAT_EVERY_SECONDS,
                    )
                    run.record(step, step_meta(result))
                    await recorder.save()

                    if not result.ok:
                        raise ProcessError(result, f"Restic process failed with exit code {result.exit_code}.")

                await recorder.succeed()
            except Exception as e:
                await recorder.fail(e)
                raise
    finally:
        await handle.release()

    logger.info("backup_finished", run_id=run.run_id)

    return run.run_id
