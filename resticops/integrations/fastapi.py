# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
resticops FastAPI Integration - Admin endpoints for an existing app.

This module exposes:
- The run audit trail (list and detail)
- The operation lock (inspect and force release)
- Backup dispatch onto the job queue
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List

import aiosqlite
import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from resticops.config import RunStatus, RunType, Settings
from resticops.core import OpsState, initialize_state
from resticops.lock import DEFAULT_STALE_SECONDS
from resticops.queue import dispatch
from resticops.runs import get_run, list_runs

logger = structlog.get_logger()

API_KEY_ENV = "RESTICOPS_ADMIN_API_KEY"

# Security
security = HTTPBearer(auto_error=False)


class BackupRequest(BaseModel):
    """Body of POST /backups."""

    tags: List[str] = []
    trigger: str = "manual"
    connection: str | None = None
    run_retention: bool = True


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the RESTICOPS_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv(API_KEY_ENV)

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail=f"{API_KEY_ENV} environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


def register_resticops_routes(
    app: FastAPI,
    settings: Settings,
    state: OpsState,
    prefix: str = "/admin/resticops",
) -> None:
    """
    Register resticops admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication.

    Args:
        app: FastAPI application
        settings: Settings snapshot
        state: Runtime state
        prefix: URL prefix for endpoints (default: /admin/resticops)
    """

    @app.get(f"{prefix}/runs", dependencies=[Depends(verify_api_key)])
    async def list_backup_runs(
        type: str | None = None,
        status: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list:
        """
        List runs, newest first.

        Args:
            type: Filter by run type
            status: Filter by status
            since: Only runs started at or after this time
            until: Only runs started before this time
            limit: Maximum number of runs to return
            offset: Number of runs to skip
        """
        if type is not None and type not in {t.value for t in RunType}:
            raise HTTPException(status_code=422, detail=f"Unknown run type: {type}")
        if status is not None and status not in {s.value for s in RunStatus}:
            raise HTTPException(status_code=422, detail=f"Unknown run status: {status}")

        async with aiosqlite.connect(state["state_db_path"]) as db:
            return await list_runs(
                db,
                run_type=type,
                status=status,
                since=since,
                until=until,
                limit=max(1, min(limit, 500)),
                offset=max(0, offset),
            )

    @app.get(f"{prefix}/runs/{{run_id}}", dependencies=[Depends(verify_api_key)])
    async def get_backup_run(run_id: str) -> dict:
        """Get one run with its full meta tree."""
        async with aiosqlite.connect(state["state_db_path"]) as db:
            record = await get_run(db, run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return record

    @app.get(f"{prefix}/lock", dependencies=[Depends(verify_api_key)])
    async def get_lock(stale_seconds: int = DEFAULT_STALE_SECONDS) -> dict:
        """
        Get the operation lock holder.

        Returns held=False when nothing holds the lock.
        """
        info = await state["lock"].get_info()
        return {
            "held": info is not None,
            "info": info,
            "stale": await state["lock"].is_stale(stale_seconds),
        }

    @app.post(f"{prefix}/lock/release", dependencies=[Depends(verify_api_key)])
    async def release_lock(stale_only: bool = True, stale_seconds: int = DEFAULT_STALE_SECONDS) -> dict:
        """
        Force-release the operation lock.

        Args:
            stale_only: Refuse unless the holder stopped heartbeating
            stale_seconds: Heartbeat age that counts as stale
        """
        info = await state["lock"].get_info()
        if info is None:
            return {"released": False, "reason": "not_held"}
        if stale_only and not await state["lock"].is_stale(stale_seconds):
            raise HTTPException(status_code=409, detail="Lock is not stale")

        released = await state["lock"].force_release()
        logger.warning("lock_released_via_api", released=released, run_id=info.get("run_id"))
        return {"released": released, "previous": info}

    @app.post(f"{prefix}/backups", status_code=202, dependencies=[Depends(verify_api_key)])
    async def trigger_backup(request: BackupRequest) -> dict:
        """
        Queue a backup run.

        The worker (`resticops work`) picks it up.
        """
        payload = request.model_dump()
        async with aiosqlite.connect(state["state_db_path"]) as db:
            job_id = await dispatch(db, "backup", payload)
        return {"job_id": job_id, "job": "backup", "payload": payload}


@asynccontextmanager
async def resticops_lifespan(app: FastAPI, settings: Settings, prefix: str = "/admin/resticops"):
    """
    Lifespan context manager for FastAPI.

        app = FastAPI(lifespan=lambda app: resticops_lifespan(app, settings))

    Args:
        app: FastAPI application
        settings: Settings snapshot
        prefix: URL prefix for admin endpoints
    """
    logger.info("resticops_lifespan_starting")

    state = await initialize_state(settings, queue_enabled=True)
    app.state.resticops_state = state
    app.state.resticops_settings = settings

    register_resticops_routes(app, settings, state, prefix)

    logger.info("resticops_lifespan_started")

    yield

    logger.info("resticops_lifespan_stopped")


def get_resticops_state(app: FastAPI) -> OpsState:
    """
    Get resticops state from a FastAPI app.

    Raises:
        RuntimeError: If resticops is not initialized
    """
    state = getattr(app.state, "resticops_state", None)
    if not state:
        raise RuntimeError("resticops not initialized. Use resticops_lifespan first.")
    return state
