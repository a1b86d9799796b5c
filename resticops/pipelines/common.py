# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Helpers shared by the pipelines: tags, triggers, error sanitizing,
requeueing and run persistence.
"""

import socket
from datetime import datetime, UTC
from typing import Any, Dict, Iterable, List

import aiosqlite
import structlog

from resticops.config import RunStatus, Settings
from resticops.db.base import META_OUTPUT_LIMIT
from resticops.lock import OperationLockHandle
from resticops.meta import RunState
from resticops.process import Heartbeat, truncate_output
from resticops.restic import redact_output, resolve_repository
from resticops.runs import create_run, finish_run, record_skipped_run, update_run_meta

logger = structlog.get_logger()

LOCK_BLOCK_SECONDS = 30
REQUEUE_DELAYS = [60, 120, 300]
HEARTBEAT_EVERY_SECONDS = 20
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


def hostname() -> str:
    return socket.gethostname() or "unknown"


def timestamp(moment: datetime | None = None) -> str:
    """14-digit UTC stamp used in directory and archive names."""
    return (moment or datetime.now(UTC)).strftime(TIMESTAMP_FORMAT)


def normalize_trigger(trigger: str | None) -> str:
    """manual, schedule or system; anything else becomes manual."""
    value = (trigger or "").strip().lower()
    return value if value in ("manual", "schedule", "system") else "manual"


def normalize_tags(tags: Iterable[Any] | None) -> List[str]:
    normalized: List[str] = []
    for tag in tags or []:
        if not isinstance(tag, (str, int, float)) or isinstance(tag, bool):
            continue
        value = str(tag).strip()
        if value:
            normalized.append(value)
    return normalized


def normalize_tag_value(value: str) -> str:
    value = value.strip().lower().replace(" ", "-")
    return value or "unknown"


def build_tags(settings: Settings, tags: Iterable[Any], trigger: str, run_type: str = "backup") -> List[str]:
    """
    Snapshot tags: app, env, host, trigger and type first, then user tags.

    Duplicates are dropped, first occurrence wins.
    """
    defaults = [
        "app:" + normalize_tag_value(settings.app_name),
        "env:" + normalize_tag_value(settings.app_env),
        "host:" + normalize_tag_value(hostname()),
        "trigger:" + trigger,
        "type:" + run_type,
    ]
    merged: List[str] = []
    for tag in normalize_tags(defaults + list(tags)):
        if tag not in merged:
            merged.append(tag)
    return merged


def sanitize_error_message(message: str, settings: Settings | None) -> str:
    """Truncate an error message and strip configured secrets from it."""
    message = truncate_output(message, META_OUTPUT_LIMIT)
    if settings is None:
        return message
    return redact_output(message, settings.secrets, resolve_repository(settings))


def lock_ttl(base_seconds: int, timeout: int) -> int:
    """The lock must outlive the slowest step."""
    return max(base_seconds, timeout)


def next_requeue_delay(attempt: int) -> int:
    index = min(max(1, attempt) - 1, len(REQUEUE_DELAYS) - 1)
    return REQUEUE_DELAYS[index]


async def requeue_or_return(state: Dict[str, Any], job: str, payload: Dict[str, Any], attempt: int) -> str | None:
    """
    Put a lock-starved pipeline back on the queue with backoff.

    Synchronous runs return without requeueing.

    Returns:
        The new job id, or None when nothing was queued
    """
    if not state.get("queue_enabled"):
        logger.info("pipeline_lock_unavailable", job=job, requeued=False)
        return None

    from resticops.queue import dispatch

    delay = next_requeue_delay(attempt)
    async with aiosqlite.connect(state["state_db_path"]) as db:
        job_id = await dispatch(db, job, payload, delay=delay, attempts=attempt + 1)

    logger.info("pipeline_lock_unavailable", job=job, requeued=True, delay=delay)

    return job_id


async def record_lock_unavailable(state: Dict[str, Any], run_type: str, meta: Dict[str, Any]) -> str:
    """Record a skipped run for a pipeline that found the lock busy."""
    async with aiosqlite.connect(state["state_db_path"]) as db:
        return await record_skipped_run(db, run_type, "lock_unavailable", meta)


def step_heartbeat(handle: OperationLockHandle, step: str) -> Heartbeat:
    """Heartbeat callback that tags the lock context with the current step."""

    async def beat(context: Dict[str, Any]) -> None:
        await handle.heartbeat({"step": step, **context})

    return beat


class RunRecorder:
    """
    Persists a RunState to the runs store.

    The run row is created by start() and rewritten by save() after
    every step; succeed() and fail() set its terminal status.
    """

    def __init__(self, db: aiosqlite.Connection, settings: Settings | None, run: RunState):
        self.db = db
        self.settings = settings
        self.run = run

    @property
    def run_id(self) -> str | None:
        return self.run.run_id

    async def start(self) -> str:
        self.run.run_id = await create_run(self.db, self.run.run_type, self.run.to_meta())
        return self.run.run_id

    async def save(self) -> None:
        if self.run.run_id is not None:
            await update_run_meta(self.db, self.run.run_id, self.run.to_meta())

    async def succeed(self) -> None:
        if self.run.run_id is not None:
            await finish_run(self.db, self.run.run_id, RunStatus.SUCCESS, self.run.to_meta())

    async def fail(self, exc: BaseException) -> None:
        """Record exc as the failure at the current step and mark the run failed."""
        self.run.fail(exc, sanitize=lambda message: sanitize_error_message(message, self.settings))

        logger.error(
            "pipeline_failed",
            type=self.run.run_type,
            run_id=self.run.run_id,
            step=self.run.current_step,
            error_class=exc.__class__.__name__,
        )

        if self.run.run_id is None:
            return
        try:
            await finish_run(self.db, self.run.run_id, RunStatus.FAILED, self.run.to_meta())
        except aiosqlite.Error as e:
            logger.error("run_failure_not_recorded", run_id=self.run.run_id, error=str(e))
