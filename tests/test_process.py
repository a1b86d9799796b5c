# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for subprocess execution.

These tests verify:
1. Output capture, truncation and redaction
2. JSON and NDJSON parsing
3. Timeouts and spawn errors are reported, not raised
4. Stdin streaming
"""

import pytest

from resticops.process import (
    TRUNCATED_SUFFIX,
    parse_json,
    run_command,
    safe_command_string,
    step_meta,
    truncate_output,
)


# ============================================================================
# Output helpers
# ============================================================================

def test_truncate_output_marks_the_cut():
    """Text over the ceiling keeps its head and gains a marker."""
    assert truncate_output("short", 10) == "short"
    assert truncate_output("a" * 20, 5) == "aaaaa" + TRUNCATED_SUFFIX
    assert truncate_output("anything", 0) == ""
    assert truncate_output("", 0) == ""


def test_truncate_output_never_splits_a_character():
    """A multi-byte character cut in half is dropped entirely."""
    assert truncate_output("é" * 4, 3) == "é" + TRUNCATED_SUFFIX


def test_parse_json_document_and_ndjson():
    assert parse_json('[{"id": "a"}]') == [{"id": "a"}]
    assert parse_json('{"a": 1}\n\n{"b": 2}\n') == [{"a": 1}, {"b": 2}]


def test_parse_json_rejects_garbage_and_scalars():
    assert parse_json("") is None
    assert parse_json("not json") is None
    assert parse_json('"just a string"') is None
    assert parse_json('{"a": 1}\nnot json') is None


def test_safe_command_string_quotes_only_when_needed():
    command = ["restic", "backup", "/var/www/my app", 'say "hi"', ""]
    assert safe_command_string(command) == 'restic backup "/var/www/my app" "say \\"hi\\"" \'\''


# ============================================================================
# run_command
# ============================================================================

@pytest.mark.asyncio
async def test_run_command_captures_exit_code_and_streams():
    result = await run_command(["sh", "-c", "echo hello; echo oops >&2; exit 3"])

    assert result.exit_code == 3
    assert not result.ok
    assert result.stdout == "hello\n"
    assert result.stderr == "oops\n"
    assert result.command[0] == "sh"
    assert result.started_at is not None and result.finished_at is not None


@pytest.mark.asyncio
async def test_run_command_timeout_is_reported_as_failure():
    """A process that outlives its timeout is killed and reported with exit code 1."""
    result = await run_command(["sleep", "5"], timeout=0.2)

    assert result.exit_code == 1
    assert "exceeded the timeout" in result.stderr


@pytest.mark.asyncio
async def test_run_command_missing_binary_is_reported_as_failure():
    result = await run_command(["/nonexistent/resticops-binary"])

    assert result.exit_code == 1
    assert result.stderr != ""


@pytest.mark.asyncio
async def test_run_command_redacts_before_returning():
    result = await run_command(
        ["sh", "-c", "echo token=hunter2; echo hunter2 >&2; exit 1"],
        redact=lambda text: text.replace("hunter2", "***"),
    )

    assert "hunter2" not in result.stdout
    assert "hunter2" not in result.stderr
    assert result.stdout == "token=***\n"


@pytest.mark.asyncio
async def test_run_command_on_failure_only_runs_on_non_zero_exit():
    ok = await run_command(["sh", "-c", "echo fine >&2"], on_failure=lambda s: s + "hint")
    failed = await run_command(["sh", "-c", "echo bad >&2; exit 2"], on_failure=lambda s: s + "hint")

    assert ok.stderr == "fine\n"
    assert failed.stderr == "bad\nhint"


@pytest.mark.asyncio
async def test_run_command_parses_json_before_truncating():
    """Parsed JSON survives even when the stored stdout is cut short."""
    result = await run_command(
        ["sh", "-c", "echo '[{\"id\": \"abcdef\", \"paths\": [\"/var/www/app\"]}]'"],
        expects_json=True,
        max_output_bytes=10,
    )

    assert result.parsed_json == [{"id": "abcdef", "paths": ["/var/www/app"]}]
    assert result.stdout.endswith(TRUNCATED_SUFFIX)


@pytest.mark.asyncio
async def test_run_command_streams_stdin():
    async def chunks():
        yield b"hello "
        yield b"world"

    result = await run_command(["cat"], stdin_chunks=chunks())

    assert result.ok
    assert result.stdout == "hello world"


@pytest.mark.asyncio
async def test_run_command_sends_stdout_to_sink():
    received = bytearray()

    async def sink(chunk: bytes) -> None:
        received.extend(chunk)

    result = await run_command(["sh", "-c", "printf abc"], stdout_sink=sink)

    assert result.ok
    assert bytes(received) == b"abc"
    assert result.stdout == ""


@pytest.mark.asyncio
async def test_step_meta_limits_stored_output():
    result = await run_command(["sh", "-c", "printf 0123456789"])
    meta = step_meta(result, limit=4)

    assert meta["exit_code"] == 0
    assert meta["stdout"] == "0123" + TRUNCATED_SUFFIX
    assert meta["command"] == 'sh -c "printf 0123456789"'
