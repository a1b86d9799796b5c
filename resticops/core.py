# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
resticops Core - Runtime state shared by all pipelines.

initialize_state() prepares the state database and wires the services a
pipeline needs: the operation lock, the restic runner, the artisan
maintenance adapter and the database driver factory.
"""

from pathlib import Path
from typing import TypedDict

import structlog

from resticops.config import Settings
from resticops.db import DriverFactory, get_driver
from resticops.lock import OperationLock, init_lock_db
from resticops.maintenance import Maintenance
from resticops.queue import init_queue_db
from resticops.restic import ResticRunner
from resticops.runs import init_runs_db

logger = structlog.get_logger()


class OpsState(TypedDict):
    """Runtime services for pipeline runs."""

    state_db_path: Path
    lock: OperationLock
    restic: ResticRunner
    maintenance: Maintenance
    driver_factory: DriverFactory
    queue_enabled: bool  # False: run synchronously, never requeue


async def init_state_db(db_path: Path) -> None:
    """Create every table of the state database. Idempotent."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    await init_runs_db(db_path)
    await init_lock_db(db_path)
    await init_queue_db(db_path)


async def initialize_state(settings: Settings, queue_enabled: bool = True) -> OpsState:
    """
    Initialize runtime state for pipeline runs.

    Args:
        settings: Settings snapshot
        queue_enabled: Whether pipelines may requeue themselves

    Returns:
        Initialized OpsState dictionary
    """
    db_path = Path(settings.state_db_path)
    await init_state_db(db_path)

    logger.info("state_initialized", db_path=str(db_path), queue_enabled=queue_enabled)

    return OpsState(
        state_db_path=db_path,
        lock=OperationLock(db_path),
        restic=ResticRunner(settings),
        maintenance=Maintenance(settings.php_binary),
        driver_factory=get_driver,
        queue_enabled=queue_enabled,
    )
