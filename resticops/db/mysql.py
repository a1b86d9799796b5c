# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
MySQL / MariaDB driver.

Dumps run mysqldump (or mariadb-dump) with --single-transaction --quick.
Accounts often lack the privileges behind --events, --triggers or
--routines; a dump that fails only on those is retried without them, and
a non-empty dump that still reports only those permission errors is
accepted with a warning.

The acceptance rule is a heuristic on stderr text: it trusts that
"access denied" plus one of the known statements means the table data
itself was dumped. It can accept a dump that is missing routines,
triggers or events, and says so in the run's warnings.
"""

import time
from pathlib import Path
from typing import Any, Dict, Iterable, List

import aiomysql
import structlog

from resticops.config import DbDriver
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

OPTIONAL_DUMP_FLAGS = ["--routines", "--triggers", "--events"]


def warning_flags_from_stderr(stderr: str) -> List[str]:
    """
    Optional dump flags blamed by a permission error in stderr.

    Returns an empty list unless stderr mentions "access denied".
    """
    message = stderr.lower()
    if "access denied" not in message:
        return []

    flags: List[str] = []
    if "show events" in message:
        flags.append("--events")
    if "show triggers" in message:
        flags.append("--triggers")
    if "show create routine" in message or "show create function" in message:
        flags.append("--routines")
    return flags


def filter_dump_flags(flags: List[str], stderr: str) -> List[str]:
    remove = warning_flags_from_stderr(stderr)
    if not remove:
        return list(flags)
    return [flag for flag in flags if flag not in remove]


def warnings_from_flags(original: List[str], final: List[str]) -> List[str]:
    removed = [flag for flag in original if flag not in final]
    if not removed:
        return []
    return ["Mysql dump retried without: " + ", ".join(removed)]


def accept_permission_warnings(result: DumpResult, original: List[str], final: List[str]) -> DumpResult:
    """
    Turn a failed but non-empty dump into a success when stderr only
    blames optional-object privileges.
    """
    if result.exit_code == 0:
        return result

    flags = warning_flags_from_stderr(result.stderr)
    if not flags or result.content_bytes <= 0:
        return result

    warnings = warnings_from_flags(original, final)
    if not warnings:
        warnings = ["Mysql dump completed with permission warnings for: " + ", ".join(flags)]

    result.exit_code = 0
    result.warnings = list(result.warnings) + warnings

    logger.warning("mysql_dump_accepted_with_warnings", flags=flags)

    return result


def build_ignore_table_flags(database: str, prefix: str | None, tables: Iterable[str]) -> List[str]:
    flags: List[str] = []
    for table in tables:
        if prefix and not table.startswith(prefix):
            table = prefix + table
        flag = f"--ignore-table={database}.{table}"
        if flag not in flags:
            flags.append(flag)
    return flags


def _quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


class MySqlDriver(DatabaseDriver):
    """mysql and mariadb connections."""

    name = "mysql"

    def connection_flags(self) -> List[str]:
        """
        Client connection flags shared by the dump tool and the client.

        A socket is used only when the host is unset or localhost.
        """
        config = self.config
        host = config.host.strip() if config.host else None
        host_lower = host.lower() if host else None
        flags: List[str] = []

        if config.unix_socket and host_lower in (None, "localhost"):
            flags.append(f"--socket={config.unix_socket}")
        else:
            if host_lower is not None and host_lower != "localhost":
                flags.append(f"--host={host}")
            if config.port is not None and host_lower != "localhost":
                flags.append(f"--port={config.port}")

        if config.username:
            flags.append(f"--user={config.username}")

        return flags

    def password_env(self) -> Dict[str, str]:
        return {"MYSQL_PWD": self.config.password} if self.config.password else {}

    def build_dump_command(self, base: List[str], optional: List[str], ignore: List[str]) -> List[str]:
        return base + optional + ignore + self.connection_flags() + [self.config.database]

    async def _connect(self):
        config = self.config
        kwargs: Dict[str, Any] = {
            "user": config.username or "root",
            "password": config.password or "",
            "db": config.database,
            "autocommit": True,
        }
        if config.unix_socket and (config.host or "localhost").lower() == "localhost":
            kwargs["unix_socket"] = config.unix_socket
        else:
            kwargs["host"] = config.host or "localhost"
            kwargs["port"] = config.port or 3306
        return await aiomysql.connect(**kwargs)

    async def is_mariadb(self) -> bool:
        """Whether the server is MariaDB (by driver name, else by version())."""
        if self.config.driver == DbDriver.MARIADB:
            return True

        try:
            conn = await self._connect()
        except (aiomysql.Error, OSError):
            return False
        try:
            async with conn.cursor() as cursor:
                await cursor.execute("select version()")
                row = await cursor.fetchone()
        except aiomysql.Error:
            return False
        finally:
            conn.close()

        version = row[0] if row else None
        return isinstance(version, str) and "mariadb" in version.lower()

    async def dump(self, dump_path: Path) -> DumpResult:
        """
        Dump with optional-object flags, retrying without the ones the
        account may not use.
        """
        if not self.config.database:
            raise PipelineError("Database name is not configured for the dump.")

        mariadb = await self.is_mariadb()
        binary = find_binary(["mariadb-dump", "mysqldump"] if mariadb else ["mysqldump", "mariadb-dump"])

        base = [binary, "--single-transaction", "--quick"]
        if not mariadb:
            base.append("--set-gtid-purged=OFF")

        optional = list(OPTIONAL_DUMP_FLAGS)
        ignore = build_ignore_table_flags(self.config.database, self.config.prefix, self.dump_exclude_tables())
        env = self.password_env()

        command = self.build_dump_command(base, optional, ignore)
        result = await stream_dump_process(command, env, dump_path, self.name, self.timeout)
        if result.exit_code == 0:
            return result

        reduced = filter_dump_flags(optional, result.stderr)
        if reduced == optional:
            return accept_permission_warnings(result, optional, optional)

        logger.info("mysql_dump_retrying", dropped=[f for f in optional if f not in reduced])

        command = self.build_dump_command(base, reduced, ignore)
        retry = await stream_dump_process(command, env, dump_path, self.name, self.timeout)
        if retry.exit_code == 0:
            retry.warnings = list(retry.warnings) + warnings_from_flags(optional, reduced)
            return retry

        return accept_permission_warnings(retry, optional, reduced)

    async def wipe(self, preserve: Iterable[str] | None = None) -> Dict[str, Any]:
        start = time.monotonic()
        excluded = self.preserved_table_set(preserve)
        dropped_tables = 0
        dropped_views = 0

        try:
            conn = await self._connect()
        except (aiomysql.Error, OSError) as e:
            return failed_meta("drop_all_tables_except", str(e), start)

        try:
            async with conn.cursor() as cursor:
                await cursor.execute("SET FOREIGN_KEY_CHECKS=0")

                await cursor.execute("SHOW FULL TABLES WHERE Table_type = 'BASE TABLE'")
                for row in await cursor.fetchall():
                    name = row[0] if row else None
                    if not isinstance(name, str) or not name or name in excluded:
                        continue
                    await cursor.execute(f"DROP TABLE IF EXISTS {_quote_identifier(name)}")
                    dropped_tables += 1

                await cursor.execute("SHOW FULL TABLES WHERE Table_type = 'VIEW'")
                for row in await cursor.fetchall():
                    name = row[0] if row else None
                    if not isinstance(name, str) or not name or name in excluded:
                        continue
                    await cursor.execute(f"DROP VIEW IF EXISTS {_quote_identifier(name)}")
                    dropped_views += 1

                await cursor.execute("SET FOREIGN_KEY_CHECKS=1")
        except aiomysql.Error as e:
            return failed_meta("drop_all_tables_except", str(e), start)
        finally:
            conn.close()

        logger.info("database_wiped", driver=self.name, tables=dropped_tables, views=dropped_views)

        return self.wipe_meta(start, excluded, dropped_tables, dropped_views)

    async def import_dump(self, dump_path: Path, cwd: Path | str | None = None) -> Dict[str, Any]:
        if not self.config.database:
            return failed_meta("mysql", "Database name is not configured for restore.")

        candidates = ["mariadb", "mysql"] if self.config.driver == DbDriver.MARIADB else ["mysql", "mariadb"]
        try:
            binary = find_binary(candidates)
        except PipelineError as e:
            return failed_meta("mysql", e.message)

        command = [binary] + self.connection_flags() + [self.config.database]
        return await stream_import_process(command, self.password_env(), dump_path, cwd, self.timeout)

    async def verify(self) -> None:
        try:
            conn = await self._connect()
        except (aiomysql.Error, OSError) as e:
            raise PipelineError(
                "Database connection failed.",
                details={"connection": self.config.name, "error": str(e)},
            )
        try:
            async with conn.cursor() as cursor:
                await cursor.execute("SELECT 1")
        except aiomysql.Error as e:
            raise PipelineError(
                "Database connection failed.",
                details={"connection": self.config.name, "error": str(e)},
            )
        finally:
            conn.close()
