# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for resticops tests.

Provides a throwaway project tree, settings pointing into a temporary
directory, an initialized state database, and a fake restic runner that
materializes a snapshot tree on restore.
"""

import gzip
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator, List
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from resticops.builder import create_settings
from resticops.config import DatabaseConfig, DbDriver, Settings
from resticops.core import OpsState, init_state_db
from resticops.db.base import DUMP_RELATIVE_PATH, DumpResult
from resticops.lock import OperationLock
from resticops.process import ProcessResult

# Set test environment variables
os.environ["RESTICOPS_ADMIN_API_KEY"] = "test-api-key-12345"

TEST_PASSWORD = "s3cr3t-restic-password"

SNAPSHOT_ID = "4f9c2a17be0d63e1a8c5f27d9b04e6a3c1d8f5b2e7a0c3d6f9b2e5a8c1d4f7a0"
OLDER_SNAPSHOT_ID = "0a7d3e91c4b6f2085e1d9c3b7a6f4e2d1c0b9a8f7e6d5c4b3a29180f7e6d5c4b"


def make_result(
    exit_code: int = 0,
    stdout: str = "",
    stderr: str = "",
    parsed_json: Any = None,
    command: tuple = ("restic",),
) -> ProcessResult:
    """Build a ProcessResult as run_command would return it."""
    return ProcessResult(
        exit_code=exit_code,
        duration_ms=5,
        stdout=stdout,
        stderr=stderr,
        parsed_json=parsed_json,
        command=command,
    )


def make_snapshot(snapshot_id: str, time: str, project_root: Path) -> Dict[str, Any]:
    return {
        "id": snapshot_id,
        "short_id": snapshot_id[:8],
        "time": time,
        "hostname": "web-1",
        "tags": ["app:app", "type:backup"],
        "paths": [str(project_root)],
    }


def write_tree(root: Path, tree: Dict[str, Any]) -> None:
    """Write {relative path: str or bytes} under root."""
    for relative, content in tree.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content)


def project_tree(label: str) -> Dict[str, Any]:
    """A minimal deployable project whose files mention label."""
    return {
        "artisan": f"#!/usr/bin/env php\n// {label}\n",
        "composer.json": json.dumps({"name": f"acme/{label}"}),
        "vendor/autoload.php": "<?php // autoload\n",
        "public/index.php": f"<?php echo '{label}';\n",
        ".env": f"APP_KEY={label}\n",
        "storage/framework/views/compiled.php": "<?php // compiled\n",
        str(DUMP_RELATIVE_PATH): gzip.compress(f"-- {label} dump\n".encode()),
    }


class FakeRestic:
    """
    Stands in for ResticRunner.

    restore() writes ``tree`` below the target the way restic does: the
    absolute project path is recreated inside the target directory.
    """

    def __init__(self, project_root: Path, snapshots: List[Dict[str, Any]]):
        self.project_root = project_root
        self.tree: Dict[str, Any] = project_tree("restored")
        self.restore_exit_code = 0

        self.version = AsyncMock(return_value=make_result(stdout="restic 0.16.4 compiled with go1.22"))
        self.snapshots = AsyncMock(
            return_value=make_result(stdout=json.dumps(snapshots), parsed_json=snapshots)
        )
        self.stats_restore_size = AsyncMock(
            return_value=make_result(parsed_json={"total_size": 4096, "total_file_count": 7})
        )
        self.backup = AsyncMock(return_value=make_result(stdout="snapshot 1a2b3c4d saved"))
        self.forget = AsyncMock(return_value=make_result(stdout="applying policy"))
        self.forget_snapshot = AsyncMock(return_value=make_result(stdout="removed snapshot"))
        self.diff = AsyncMock(return_value=make_result(stdout=""))
        self.restore = AsyncMock(side_effect=self._restore)

    def _included(self, absolute: str, include: List[str] | None) -> bool:
        if not include:
            return True
        for item in include:
            item = item.rstrip("/")
            if absolute == item or absolute.startswith(item + "/"):
                return True
        return False

    async def _restore(self, snapshot_id, target_dir, include=None, exclude=None, **options) -> ProcessResult:
        if self.restore_exit_code != 0:
            return make_result(exit_code=self.restore_exit_code, stderr="Fatal: restore failed")

        base = Path(target_dir) / str(self.project_root).lstrip("/")
        for relative, content in self.tree.items():
            if not self._included(f"{self.project_root}/{relative}", include):
                continue
            write_tree(base, {relative: content})
        return make_result(stdout=f"restoring <Snapshot {snapshot_id[:8]}> to {target_dir}")


def make_maintenance() -> MagicMock:
    """Artisan adapter whose commands all succeed."""
    maintenance = MagicMock()
    for name in ("down", "up", "storage_link", "optimize_clear", "queue_restart"):
        result = {"exit_code": 0, "duration_ms": 1, "stdout": "", "stderr": "", "command": f"php artisan {name}"}
        setattr(maintenance, name, AsyncMock(side_effect=lambda *args, _result=result, **kwargs: dict(_result)))
    return maintenance


def make_driver() -> MagicMock:
    """Database driver whose operations all succeed."""
    driver = MagicMock()
    driver.verify = AsyncMock(return_value=None)
    driver.dump = AsyncMock(
        return_value=DumpResult(
            driver="sqlite",
            exit_code=0,
            duration_ms=3,
            stderr="",
            size_bytes=128,
            command="sqlite-copy",
        )
    )
    driver.wipe = AsyncMock(return_value={"exit_code": 0, "dropped_tables_count": 3})
    driver.import_dump = AsyncMock(return_value={"exit_code": 0, "stderr": ""})
    return driver


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def project_root(temp_dir: Path) -> Path:
    """Live project tree at <temp>/www/app."""
    root = temp_dir / "www" / "app"
    write_tree(root, project_tree("live"))
    return root


@pytest.fixture
def settings(temp_dir: Path, project_root: Path) -> Settings:
    """Settings with a local repository and a SQLite application database."""
    return create_settings(
        project_root,
        restic_repository=str(temp_dir / "repo"),
        restic_password=TEST_PASSWORD,
        state_db_path=temp_dir / "state" / "resticops.db",
        work_dir=temp_dir / "work",
        connections={
            "default": DatabaseConfig(driver=DbDriver.SQLITE, database=str(temp_dir / "app.sqlite")),
        },
    )


@pytest.fixture
def snapshots(project_root: Path) -> List[Dict[str, Any]]:
    """Two snapshots, the newer one last."""
    return [
        make_snapshot(OLDER_SNAPSHOT_ID, "2026-03-01T02:00:00.123456789Z", project_root),
        make_snapshot(SNAPSHOT_ID, "2026-03-02T02:00:00.987654321Z", project_root),
    ]


@pytest.fixture
def restic(project_root: Path, snapshots) -> FakeRestic:
    return FakeRestic(project_root, snapshots)


@pytest.fixture
def maintenance() -> MagicMock:
    return make_maintenance()


@pytest.fixture
def driver() -> MagicMock:
    return make_driver()


@pytest_asyncio.fixture
async def state_db_path(settings: Settings) -> Path:
    """Create the state database tables."""
    db_path = Path(settings.state_db_path)
    await init_state_db(db_path)
    return db_path


@pytest_asyncio.fixture
async def ops_state(state_db_path: Path, restic, maintenance, driver) -> OpsState:
    """Runtime state with fake restic, artisan and database services."""
    return OpsState(
        state_db_path=state_db_path,
        lock=OperationLock(state_db_path),
        restic=restic,
        maintenance=maintenance,
        driver_factory=lambda config, settings: driver,
        queue_enabled=False,
    )
