# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
resticops Maintenance - Wrapper around the application's artisan commands.

Results are plain step meta dicts. Idempotent outcomes ("already down",
"already up") are normalised to exit code 0 with a note.
"""

import secrets
import string
from pathlib import Path
from typing import Any, Dict, List

import structlog

from resticops.db.base import META_OUTPUT_LIMIT
from resticops.process import run_command, step_meta

logger = structlog.get_logger()

_SECRET_ALPHABET = string.ascii_lowercase + string.digits


def generate_down_secret(length: int = 32) -> str:
    """Random lowercase bypass secret for `artisan down --secret`."""
    return "".join(secrets.choice(_SECRET_ALPHABET) for _ in range(length))


def _output(result: Dict[str, Any]) -> str:
    return (str(result.get("stdout") or "") + " " + str(result.get("stderr") or "")).lower()


def option_missing(result: Dict[str, Any], option: str) -> bool:
    """Whether artisan rejected an unknown option."""
    message = _output(result)
    return "option does not exist" in message and option.lstrip("-").lower() in message


def already_down(result: Dict[str, Any]) -> bool:
    message = _output(result)
    return "already down" in message or "already in maintenance" in message


def already_up(result: Dict[str, Any]) -> bool:
    message = _output(result)
    return "already up" in message or "not in maintenance" in message


def _add_note(result: Dict[str, Any], note: str) -> None:
    result["note"] = (str(result.get("note") or "") + " " + note).strip()


class Maintenance:
    """
    Artisan runner bound to a php binary and an output ceiling.

    The working directory is passed per call, because the live project
    root moves during an atomic cutover.
    """

    def __init__(self, php_binary: str = "php", timeout: float = 600):
        self.php_binary = php_binary
        self.timeout = timeout

    async def artisan(self, arguments: List[str], cwd: Path | str) -> Dict[str, Any]:
        result = await run_command(
            [self.php_binary, "artisan", *arguments],
            cwd=cwd,
            timeout=self.timeout,
            max_output_bytes=META_OUTPUT_LIMIT,
        )
        return step_meta(result)

    async def down(self, cwd: Path | str, secret: str | None = None) -> Dict[str, Any]:
        """
        Enable maintenance mode.

        Tries --force first and falls back to plain `down` on artisan
        versions without that option.

        Args:
            cwd: Project root
            secret: Optional bypass secret

        Returns:
            Step meta; exit_code 0 also when the app was already down
        """
        secret_args = [f"--secret={secret}"] if secret else []

        result = await self.artisan(["down", "--force", *secret_args], cwd)
        if result["exit_code"] != 0 and option_missing(result, "--force"):
            result = await self.artisan(["down", *secret_args], cwd)
            result["note"] = "Retry without --force (option not supported)."

        if result["exit_code"] != 0 and already_down(result):
            result["exit_code"] = 0
            _add_note(result, "Application already in maintenance mode.")

        logger.info("maintenance_down", exit_code=result["exit_code"])

        return result

    async def up(self, cwd: Path | str) -> Dict[str, Any]:
        """Disable maintenance mode; "already up" counts as success."""
        result = await self.artisan(["up"], cwd)
        if result["exit_code"] != 0 and already_up(result):
            result["exit_code"] = 0
            _add_note(result, "Application already up.")

        logger.info("maintenance_up", exit_code=result["exit_code"])

        return result

    async def storage_link(self, cwd: Path | str) -> Dict[str, Any]:
        return await self.artisan(["storage:link"], cwd)

    async def optimize_clear(self, cwd: Path | str) -> Dict[str, Any]:
        return await self.artisan(["optimize:clear"], cwd)

    async def queue_restart(self, cwd: Path | str) -> Dict[str, Any]:
        return await self.artisan(["queue:restart"], cwd)
