# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
SQLite driver.

A dump is the raw database file, gzip-compressed. Import writes the
gunzipped bytes next to the database and renames them over it.
"""

import os
import time
import zlib
from pathlib import Path
from typing import Any, Dict, Iterable

import aiofiles
import aiosqlite
import structlog

from resticops.db.base import (
    DatabaseDriver,
    DumpResult,
    GzipFileSink,
    elapsed_ms,
    failed_meta,
    gunzip_chunks,
)
from resticops.exceptions import PipelineError

logger = structlog.get_logger()

_CHUNK = 1024 * 1024


def _quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class SqliteDriver(DatabaseDriver):
    """sqlite connections; ``database`` is the file path."""

    name = "sqlite"

    @property
    def database_path(self) -> Path:
        database = (self.config.database or "").strip()
        if not database or database == ":memory:":
            raise PipelineError("SQLite database path is not configured for the dump.")
        return Path(database)

    async def dump(self, dump_path: Path) -> DumpResult:
        source = self.database_path
        start = time.monotonic()

        try:
            async with aiofiles.open(source, "rb") as reader:
                async with GzipFileSink(dump_path) as sink:
                    while True:
                        chunk = await reader.read(_CHUNK)
                        if not chunk:
                            break
                        await sink.write(chunk)
        except OSError as e:
            raise PipelineError(
                "Unable to read SQLite database file.",
                details={"database": str(source), "error": str(e)},
            )

        size = dump_path.stat().st_size if dump_path.exists() else 0

        logger.info("database_dump_finished", driver=self.name, exit_code=0, size_bytes=size)

        return DumpResult(
            driver=self.name,
            exit_code=0,
            duration_ms=elapsed_ms(start),
            stderr="",
            size_bytes=size,
            command="sqlite-copy",
        )

    async def wipe(self, preserve: Iterable[str] | None = None) -> Dict[str, Any]:
        start = time.monotonic()
        excluded = self.preserved_table_set(preserve)
        dropped_tables = 0
        dropped_views = 0

        try:
            async with aiosqlite.connect(self.database_path) as db:
                async with db.execute(
                    "SELECT name, type FROM sqlite_master "
                    "WHERE type IN ('table', 'view') AND name NOT LIKE 'sqlite_%'"
                ) as cursor:
                    entries = await cursor.fetchall()

                await db.execute("PRAGMA foreign_keys = OFF")
                for name, kind in entries:
                    if not name or name in excluded:
                        continue
                    if kind == "view":
                        await db.execute(f"DROP VIEW IF EXISTS {_quote_identifier(name)}")
                        dropped_views += 1
                    else:
                        await db.execute(f"DROP TABLE IF EXISTS {_quote_identifier(name)}")
                        dropped_tables += 1
                await db.commit()
        except (aiosqlite.Error, PipelineError) as e:
            return failed_meta("drop_all_tables_except", str(e), start)

        logger.info("database_wiped", driver=self.name, tables=dropped_tables, views=dropped_views)

        return self.wipe_meta(start, excluded, dropped_tables, dropped_views)

    async def import_dump(self, dump_path: Path, cwd: Path | str | None = None) -> Dict[str, Any]:
        start = time.monotonic()
        dump_path = Path(dump_path)
        if not dump_path.is_file():
            return failed_meta("sqlite-restore", "Unable to open database dump for import.", start)

        try:
            target = self.database_path
        except PipelineError as e:
            return failed_meta("sqlite-restore", e.message, start)

        partial = target.with_name(target.name + ".restoring")
        try:
            async with aiofiles.open(partial, "wb") as writer:
                async for chunk in gunzip_chunks(dump_path):
                    await writer.write(chunk)
            os.replace(partial, target)
        except (OSError, ValueError, zlib.error) as e:
            partial.unlink(missing_ok=True)
            return failed_meta("sqlite-restore", str(e), start)

        return {
            "exit_code": 0,
            "duration_ms": elapsed_ms(start),
            "stdout": "",
            "stderr": "",
            "command": "sqlite-restore",
            "dump_path": str(dump_path),
        }

    async def verify(self) -> None:
        path = self.database_path
        if not path.is_file():
            raise PipelineError(
                "Database connection failed.",
                details={"connection": self.config.name, "error": f"{path} does not exist"},
            )
        try:
            async with aiosqlite.connect(path) as db:
                await db.execute("SELECT 1")
        except aiosqlite.Error as e:
            raise PipelineError(
                "Database connection failed.",
                details={"connection": self.config.name, "error": str(e)},
            )
