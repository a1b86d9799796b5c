# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Database driver interface and shared gzip streaming helpers.

Dumps are written as gzip (level 9) while the dump tool runs; imports
stream the gunzipped bytes into the client's stdin. Neither side holds
the whole dump in memory.
"""

import re
import time
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Sequence, Set

import aiofiles
import structlog

from resticops.config import DatabaseConfig, Settings
from resticops.process import run_command, safe_command_string, step_meta, truncate_output

logger = structlog.get_logger()

META_OUTPUT_LIMIT = 204800
DUMP_RELATIVE_PATH = Path("storage") / "app" / "_backup" / "db.sql.gz"

_CHUNK = 1024 * 1024
_GZIP_WBITS = 16 + zlib.MAX_WBITS
_TABLE_NAME = re.compile(r"^[A-Za-z0-9_]+$")


@dataclass
class DumpResult:
    """Outcome of one database dump."""

    driver: str
    exit_code: int
    duration_ms: int
    stderr: str
    size_bytes: int
    command: str
    warnings: List[str] = field(default_factory=list)
    # Uncompressed bytes the tool wrote; size_bytes includes the gzip framing
    content_bytes: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def as_meta(self) -> Dict[str, Any]:
        meta = {
            "driver": self.driver,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "stderr": self.stderr,
            "size_bytes": self.size_bytes,
            "command": self.command,
        }
        if self.warnings:
            meta["warnings"] = list(self.warnings)
        return meta


def normalize_table_names(tables: Iterable[Any]) -> List[str]:
    """Keep plain identifier table names, de-duplicated in order."""
    names: List[str] = []
    for table in tables:
        if not isinstance(table, (str, int)) or isinstance(table, bool):
            continue
        name = str(table).strip()
        if name and _TABLE_NAME.match(name) and name not in names:
            names.append(name)
    return names


def prefixed_table_set(tables: Iterable[Any], prefix: str | None) -> Set[str]:
    """Table names plus their prefixed form, as they appear in the database."""
    result: Set[str] = set()
    for table in normalize_table_names(tables):
        result.add(table)
        if prefix and not table.startswith(prefix):
            result.add(prefix + table)
    return result


def elapsed_ms(start: float) -> int:
    return int(round((time.monotonic() - start) * 1000))


def failed_meta(command: str, message: str, start: float | None = None) -> Dict[str, Any]:
    """Step meta for a step that failed without running a process."""
    return {
        "exit_code": 1,
        "duration_ms": elapsed_ms(start) if start is not None else 0,
        "stderr": truncate_output(message, META_OUTPUT_LIMIT),
        "command": command,
    }


class GzipFileSink:
    """Async byte sink compressing into a gzip file."""

    def __init__(self, path: Path, level: int = 9):
        self.path = path
        self._compressor = zlib.compressobj(level, zlib.DEFLATED, _GZIP_WBITS)
        self._file = None
        self.raw_bytes = 0

    async def __aenter__(self) -> "GzipFileSink":
        self.path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        self._file = await aiofiles.open(self.path, "wb")
        return self

    async def write(self, chunk: bytes) -> None:
        self.raw_bytes += len(chunk)
        data = self._compressor.compress(chunk)
        if data:
            await self._file.write(data)

    async def __aexit__(self, *exc_info: Any) -> None:
        try:
            await self._file.write(self._compressor.flush())
        finally:
            await self._file.close()


async def gunzip_chunks(path: Path | str) -> AsyncIterator[bytes]:
    """Yield the decompressed content of a gzip file (multi-member aware)."""
    decompressor = zlib.decompressobj(_GZIP_WBITS)
    async with aiofiles.open(path, "rb") as f:
        while True:
            raw = await f.read(_CHUNK)
            if not raw:
                break
            while raw:
                data = decompressor.decompress(raw)
                if data:
                    yield data
                if decompressor.eof:
                    raw = decompressor.unused_data
                    decompressor = zlib.decompressobj(_GZIP_WBITS)
                else:
                    raw = b""
    tail = decompressor.flush()
    if tail:
        yield tail


async def stream_dump_process(
    command: Sequence[str],
    env: Dict[str, str],
    dump_path: Path,
    driver: str,
    timeout: float,
) -> DumpResult:
    """
    Run a dump tool, gzip its stdout into dump_path and keep its stderr.

    Args:
        command: Dump tool argument vector
        env: Extra environment (passwords)
        dump_path: Destination .sql.gz
        driver: Driver name recorded in the result
        timeout: Seconds before the tool is killed

    Returns:
        DumpResult with the compressed file size and the uncompressed byte count
    """
    async with GzipFileSink(dump_path) as sink:
        result = await run_command(
            command,
            env=env,
            timeout=timeout,
            max_output_bytes=META_OUTPUT_LIMIT,
            stdout_sink=sink.write,
        )

    size = dump_path.stat().st_size if dump_path.exists() else 0

    logger.info(
        "database_dump_finished",
        driver=driver,
        exit_code=result.exit_code,
        size_bytes=size,
    )

    return DumpResult(
        driver=driver,
        exit_code=result.exit_code,
        duration_ms=result.duration_ms,
        stderr=result.stderr,
        size_bytes=size,
        command=result.command_string,
        content_bytes=sink.raw_bytes,
    )


async def stream_import_process(
    command: Sequence[str],
    env: Dict[str, str],
    dump_path: Path,
    cwd: Path | str | None,
    timeout: float,
) -> Dict[str, Any]:
    """Pipe a gunzipped dump into a database client; return its step meta."""
    dump_path = Path(dump_path)
    if not dump_path.is_file():
        return failed_meta(safe_command_string(command), "Unable to open database dump for import.")

    result = await run_command(
        command,
        cwd=cwd,
        env=env,
        timeout=timeout,
        max_output_bytes=META_OUTPUT_LIMIT,
        stdin_chunks=gunzip_chunks(dump_path),
    )
    meta = step_meta(result)
    meta["dump_path"] = str(dump_path)
    return meta


class DatabaseDriver(ABC):
    """
    Strategy for one database engine.

    Result-returning methods (dump, wipe, import_dump) report failure in
    their exit_code instead of raising; verify raises.
    """

    name: str = ""

    def __init__(self, config: DatabaseConfig, settings: Settings):
        self.config = config
        self.settings = settings

    @property
    def timeout(self) -> int:
        return self.settings.timeout

    def dump_exclude_tables(self) -> List[str]:
        """Tables left out of dumps: configured exclusions plus preserved tables."""
        return normalize_table_names(
            list(self.settings.exclude_from_dumps) + list(self.settings.preserve_tables)
        )

    def preserved_table_set(self, tables: Iterable[str] | None = None) -> Set[str]:
        """Tables never dropped by wipe(), with and without the table prefix."""
        source = self.settings.preserve_tables if tables is None else tables
        return prefixed_table_set(source, self.config.prefix)

    @abstractmethod
    async def dump(self, dump_path: Path) -> DumpResult:
        """Write a gzip-compressed dump to dump_path."""

    @abstractmethod
    async def wipe(self, preserve: Iterable[str] | None = None) -> Dict[str, Any]:
        """Drop every table and view except the preserved ones."""

    @abstractmethod
    async def import_dump(self, dump_path: Path, cwd: Path | str | None = None) -> Dict[str, Any]:
        """Load a gzip-compressed dump produced by dump()."""

    @abstractmethod
    async def verify(self) -> None:
        """
        Check that the database is reachable.

        Raises:
            PipelineError: If it is not
        """

    def wipe_meta(self, start: float, excluded: Set[str], tables: int, views: int) -> Dict[str, Any]:
        return {
            "exit_code": 0,
            "duration_ms": elapsed_ms(start),
            "driver": self.name,
            "excluded_tables": sorted(excluded),
            "dropped_tables_count": tables,
            "dropped_views_count": views,
            "command": "drop_all_tables_except",
        }
