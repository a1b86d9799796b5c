# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
resticops Process - Subprocess execution with capped, auditable output.

Every external binary (restic, dump tools, artisan, rsync, du) goes through
run_command(). The result is an immutable ProcessResult that can be stored
in run meta as-is via step_meta().
"""

import asyncio
import json
import os
import re
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Sequence, Tuple

import structlog

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 3600
DEFAULT_MAX_OUTPUT_BYTES = 5242880
TRUNCATED_SUFFIX = "\n...[truncated]"

# Bytes kept in memory per stream before redaction and final truncation
_CAPTURE_HEADROOM = 65536
_READ_CHUNK = 65536

_NEEDS_QUOTING = re.compile(r'\s|["\\]')

Heartbeat = Callable[[Dict[str, Any]], Awaitable[None]]
ByteSink = Callable[[bytes], Awaitable[None]]


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of one subprocess invocation."""

    exit_code: int
    duration_ms: int
    stdout: str
    stderr: str
    parsed_json: Any = None
    command: Tuple[str, ...] = ()
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def command_string(self) -> str:
        """Argument vector escaped for display."""
        return safe_command_string(self.command)


def safe_command_string(command: Sequence[str]) -> str:
    """Join an argument vector, quoting arguments with spaces, quotes or backslashes."""
    parts: List[str] = []
    for argument in command:
        if argument == "":
            parts.append("''")
        elif not _NEEDS_QUOTING.search(argument):
            parts.append(argument)
        else:
            escaped = argument.replace("\\", "\\\\").replace('"', '\\"')
            parts.append(f'"{escaped}"')
    return " ".join(parts)


def truncate_output(output: str, max_bytes: int) -> str:
    """
    Cap text at max_bytes of UTF-8, marking the cut.

    Args:
        output: Captured text
        max_bytes: Byte ceiling; <= 0 drops the text entirely

    Returns:
        The text itself, or its first max_bytes followed by a truncation marker
    """
    if output == "":
        return output
    if max_bytes <= 0:
        return ""
    raw = output.encode("utf-8")
    if len(raw) <= max_bytes:
        return output
    return raw[:max_bytes].decode("utf-8", errors="ignore") + TRUNCATED_SUFFIX


def parse_json(output: str) -> Any:
    """
    Parse a single JSON document or newline-delimited JSON objects.

    Returns None for empty or malformed output instead of raising.
    """
    output = output.strip()
    if not output:
        return None

    try:
        decoded = json.loads(output)
    except ValueError:
        decoded = None
    else:
        return decoded if isinstance(decoded, (dict, list)) else None

    items: List[Any] = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            item = json.loads(line)
        except ValueError:
            return None
        if not isinstance(item, (dict, list)):
            return None
        items.append(item)

    return items or None


def step_meta(result: ProcessResult, limit: int | None = None) -> Dict[str, Any]:
    """
    Serialize a process result for a run's step meta.

    Args:
        result: The process result
        limit: Optional byte ceiling for stdout/stderr

    Returns:
        Dict with exit_code, duration_ms, stdout, stderr and command
    """
    stdout, stderr = result.stdout, result.stderr
    if limit is not None:
        stdout = truncate_output(stdout, limit)
        stderr = truncate_output(stderr, limit)
    return {
        "exit_code": result.exit_code,
        "duration_ms": result.duration_ms,
        "stdout": stdout,
        "stderr": stderr,
        "command": result.command_string,
    }


def find_binary(candidates: Sequence[str]) -> str:
    """
    Return the first candidate executable found on PATH.

    Raises:
        PipelineError: If none of the candidates exists
    """
    for candidate in candidates:
        path = shutil.which(candidate)
        if path:
            return path

    from resticops.exceptions import PipelineError

    raise PipelineError(f"Binary [{', '.join(candidates)}] not found.")


async def _pump(
    stream: asyncio.StreamReader,
    buffer: bytearray,
    limit: int | None,
    sink: ByteSink | None,
) -> None:
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        if sink is not None:
            await sink(chunk)
        elif limit is None:
            buffer.extend(chunk)
        elif len(buffer) < limit:
            buffer.extend(chunk[: limit - len(buffer)])


async def _feed(stdin: asyncio.StreamWriter, chunks: AsyncIterator[bytes]) -> None:
    try:
        async for chunk in chunks:
            stdin.write(chunk)
            await stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.warning("process_stdin_closed_early")
    finally:
        stdin.close()


async def _beat(callback: Heartbeat, every: float, started: float) -> None:
    while True:
        await asyncio.sleep(every)
        try:
            await callback({"elapsed_seconds": int(time.monotonic() - started)})
        except Exception as e:
            logger.warning("process_heartbeat_failed", error=str(e))


async def run_command(
    command: Sequence[str],
    *,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = DEFAULT_TIMEOUT_SECONDS,
    max_output_bytes: int | None = DEFAULT_MAX_OUTPUT_BYTES,
    stdin_chunks: AsyncIterator[bytes] | None = None,
    stdout_sink: ByteSink | None = None,
    heartbeat: Heartbeat | None = None,
    heartbeat_every: float = 20,
    redact: Callable[[str], str] | None = None,
    on_failure: Callable[[str], str] | None = None,
    expects_json: bool = False,
) -> ProcessResult:
    """
    Run an external command and capture its outcome.

    Output is processed in a fixed order: redact, then (on failure)
    on_failure for stderr, then JSON parsing, then truncation. Timeouts and
    spawn errors are reported as exit code 1 with the reason appended to
    stderr rather than raised.

    Args:
        command: Argument vector; the first item is the binary
        cwd: Working directory
        env: Variables added on top of the current environment
        timeout: Seconds before the process is killed (None: no limit)
        max_output_bytes: Byte ceiling for stdout and stderr (None: keep everything)
        stdin_chunks: Async iterator streamed into the process stdin
        stdout_sink: Receives stdout chunks instead of capturing them
        heartbeat: Awaited about every heartbeat_every seconds while running
        heartbeat_every: Heartbeat interval in seconds
        redact: Applied to stdout and stderr before anything else
        on_failure: Applied to stderr when the exit code is non-zero
        expects_json: Parse stdout with parse_json()

    Returns:
        ProcessResult with redacted, truncated output
    """
    argv = tuple(str(part) for part in command)
    full_env = {**os.environ, **(env or {})}
    # JSON output is parsed before truncation, so keep it whole
    capture_limit = None
    if not expects_json and max_output_bytes is not None:
        capture_limit = max(max_output_bytes, 0) + _CAPTURE_HEADROOM

    started_at = datetime.now(UTC)
    start = time.monotonic()
    out_buf = bytearray()
    err_buf = bytearray()
    exit_code = 1
    error_message: str | None = None

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd is not None else None,
            env=full_env,
            stdin=asyncio.subprocess.PIPE if stdin_chunks is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        proc = None
        error_message = str(e)

    if proc is not None:
        tasks = [
            _pump(proc.stdout, out_buf, capture_limit, stdout_sink),
            _pump(proc.stderr, err_buf, capture_limit, None),
        ]
        if stdin_chunks is not None:
            tasks.append(_feed(proc.stdin, stdin_chunks))
        tasks = [asyncio.ensure_future(task) for task in tasks]

        beat_task = None
        if heartbeat is not None and heartbeat_every > 0:
            beat_task = asyncio.create_task(_beat(heartbeat, heartbeat_every, start))

        try:
            await asyncio.wait_for(asyncio.gather(*tasks, proc.wait()), timeout)
            exit_code = proc.returncode if proc.returncode is not None else 1
        except asyncio.TimeoutError:
            error_message = (
                f'The process "{safe_command_string(argv)}" exceeded the timeout of {timeout} seconds.'
            )
        except Exception as e:
            error_message = str(e) or e.__class__.__name__
        finally:
            if beat_task is not None:
                beat_task.cancel()
                try:
                    await beat_task
                except asyncio.CancelledError:
                    pass
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if error_message is not None:
            exit_code = 1

    finished_at = datetime.now(UTC)
    duration_ms = int(round((time.monotonic() - start) * 1000))

    stdout = out_buf.decode("utf-8", errors="replace")
    stderr = err_buf.decode("utf-8", errors="replace")
    if error_message is not None:
        stderr = (stderr + "\n" + error_message).strip()

    if redact is not None:
        stdout = redact(stdout)
        stderr = redact(stderr)

    if exit_code != 0 and on_failure is not None:
        stderr = on_failure(stderr)

    parsed = parse_json(stdout) if expects_json else None

    if max_output_bytes is not None:
        stdout = truncate_output(stdout, max_output_bytes)
        stderr = truncate_output(stderr, max_output_bytes)

    result = ProcessResult(
        exit_code=exit_code,
        duration_ms=duration_ms,
        stdout=stdout,
        stderr=stderr,
        parsed_json=parsed,
        command=argv,
        started_at=started_at,
        finished_at=finished_at,
    )

    logger.debug(
        "process_finished",
        command=argv[0] if argv else "",
        exit_code=exit_code,
        duration_ms=duration_ms,
    )

    return result
