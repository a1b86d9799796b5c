# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
PostgreSQL driver.

Dumps are plain SQL from pg_dump without ownership or privilege
statements, so they load into a database owned by another role.
Only the public schema is wiped.
"""

import time
from pathlib import Path
from typing import Any, Dict, Iterable, List

import asyncpg
import structlog

from resticops.db.base import (
    DatabaseDriver,
    DumpResult,
    failed_meta,
    stream_dump_process,
    stream_import_process,
)
from resticops.exceptions import PipelineError
from resticops.process import find_binary

logger = structlog.get_logger()


def _quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class PostgresDriver(DatabaseDriver):
    """pgsql connections."""

    name = "pgsql"

    def connection_flags(self) -> List[str]:
        config = self.config
        flags: List[str] = []
        if config.host:
            flags.append(f"--host={config.host}")
        if config.port is not None:
            flags.append(f"--port={config.port}")
        if config.username:
            flags.append(f"--username={config.username}")
        flags.append(f"--dbname={config.database}")
        return flags

    def password_env(self) -> Dict[str, str]:
        return {"PGPASSWORD": self.config.password} if self.config.password else {}

    async def _connect(self) -> asyncpg.Connection:
        config = self.config
        return await asyncpg.connect(
            host=config.unix_socket or config.host or "localhost",
            port=config.port or 5432,
            user=config.username,
            password=config.password,
            database=config.database,
        )

    async def dump(self, dump_path: Path) -> DumpResult:
        if not self.config.database:
            raise PipelineError("Database name is not configured for the dump.")

        binary = find_binary(["pg_dump"])
        command = [binary, "--format=plain", "--no-owner", "--no-privileges"] + self.connection_flags()
        return await stream_dump_process(command, self.password_env(), dump_path, self.name, self.timeout)

    async def wipe(self, preserve: Iterable[str] | None = None) -> Dict[str, Any]:
        start = time.monotonic()
        excluded = self.preserved_table_set(preserve)
        dropped_tables = 0
        dropped_views = 0

        try:
            conn = await self._connect()
        except (asyncpg.PostgresError, OSError) as e:
            return failed_meta("drop_all_tables_except", str(e), start)

        try:
            rows = await conn.fetch("SELECT tablename FROM pg_tables WHERE schemaname = 'public'")
            for row in rows:
                name = row["tablename"]
                if not name or name in excluded:
                    continue
                await conn.execute(f"DROP TABLE IF EXISTS {_quote_identifier(name)} CASCADE")
                dropped_tables += 1

            rows = await conn.fetch("SELECT viewname FROM pg_views WHERE schemaname = 'public'")
            for row in rows:
                name = row["viewname"]
                if not name or name in excluded:
                    continue
                await conn.execute(f"DROP VIEW IF EXISTS {_quote_identifier(name)} CASCADE")
                dropped_views += 1
        except asyncpg.PostgresError as e:
            return failed_meta("drop_all_tables_except", str(e), start)
        finally:
            await conn.close()

        logger.info("database_wiped", driver=self.name, tables=dropped_tables, views=dropped_views)

        return self.wipe_meta(start, excluded, dropped_tables, dropped_views)

    async def import_dump(self, dump_path: Path, cwd: Path | str | None = None) -> Dict[str, Any]:
        try:
            binary = find_binary(["psql"])
        except PipelineError as e:
            return failed_meta("psql", e.message)

        command = [binary, "--quiet", "--set", "ON_ERROR_STOP=1"] + self.connection_flags()
        return await stream_import_process(command, self.password_env(), dump_path, cwd, self.timeout)

    async def verify(self) -> None:
        try:
            conn = await self._connect()
        except (asyncpg.PostgresError, OSError) as e:
            raise PipelineError(
                "Database connection failed.",
                details={"connection": self.config.name, "error": str(e)},
            )
        try:
            await conn.fetchval("SELECT 1")
        except asyncpg.PostgresError as e:
            raise PipelineError(
                "Database connection failed.",
                details={"connection": self.config.name, "error": str(e)},
            )
        finally:
            await conn.close()
