# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""Forget-snapshot pipeline: remove one snapshot and prune, under the lock."""

from typing import Any, Dict

import aiosqlite
import structlog

from resticops.config import RunType, Settings
from resticops.db.base import META_OUTPUT_LIMIT
from resticops.exceptions import PipelineError
from resticops.meta import RunState
from resticops.pipelines.common import RunRecorder, lock_ttl, normalize_trigger, record_lock_unavailable
from resticops.process import step_meta

logger = structlog.get_logger()

FORGET_LOCK_TTL_SECONDS = 7200


async def run_forget_snapshot(
    settings: Settings,
    state: Dict[str, Any],
    snapshot_id: str,
    trigger: str | None = None,
    attempt: int = 1,
) -> str:
    """
    Forget one snapshot with --prune.

    The lock is tried once; a busy lock records a skipped run.

    Args:
        settings: Settings snapshot
        state: Runtime state from initialize_state()
        snapshot_id: Snapshot to remove
        trigger: manual, schedule or system
        attempt: Queue attempt number (forgets are never requeued)

    Returns:
        The run id (of the skipped run when the lock was busy)

    Raises:
        ResticOpsError: If restic fails, after it is recorded on the run
    """
    trigger = normalize_trigger(trigger)
    snapshot_id = (snapshot_id or "").strip()
    base_meta = {
        "snapshot_id": snapshot_id,
        "snapshot_short_id": snapshot_id[:8],
        "trigger": trigger,
    }

    handle = await state["lock"].acquire(
        RunType.FORGET_SNAPSHOT.value,
        lock_ttl(FORGET_LOCK_TTL_SECONDS, settings.timeout),
        block_seconds=0,
        context=dict(base_meta),
    )
    if handle is None:
        run_id = await record_lock_unavailable(state, RunType.FORGET_SNAPSHOT.value, base_meta)
        logger.info("forget_skipped", run_id=run_id, reason="lock_unavailable")
        return run_id

    run = RunState(RunType.FORGET_SNAPSHOT.value)
    run.update(**base_meta)

    try:
        async with aiosqlite.connect(state["state_db_path"]) as db:
            recorder = RunRecorder(db, settings, run)
            try:
                await recorder.start()
                await handle.set_run_id(run.run_id)

                step = run.begin("forget_prune")
                await handle.heartbeat({"step": step})
                result = await state["restic"].forget_snapshot(
                    snapshot_id,
                    prune=True,
                    timeout=settings.timeout,
                    max_output_bytes=META_OUTPUT_LIMIT,
                )
                run.record(step, step_meta(result))
                await recorder.save()

                if not result.ok:
                    raise PipelineError("Snapshot forget failed.")

                await recorder.succeed()
            except Exception as e:
                await recorder.fail(e)
                raise
    finally:
        await handle.release()

    logger.info("snapshot_forgotten", run_id=run.run_id, snapshot_id=snapshot_id)

    return run.run_id
