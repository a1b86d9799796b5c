# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
resticops Exceptions - Custom exceptions for the resticops package.
"""

from typing import List


class ResticOpsError(Exception):
    """Base exception for all resticops errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(ResticOpsError):
    """Raised when settings are missing or invalid.

    ``missing`` names the settings fields that must be filled in before
    the operation can run. It is never retried.
    """

    def __init__(
        self,
        message: str = "Restic configuration is incomplete.",
        details: dict | None = None,
        missing: List[str] | None = None,
    ):
        self.missing = list(missing or [])
        details = dict(details or {})
        if self.missing:
            details.setdefault("missing", self.missing)
        super().__init__(message, details)


class ProcessError(ResticOpsError):
    """Raised when an external process exits with a non-zero code."""

    def __init__(self, result, message: str | None = None):
        self.result = result
        super().__init__(
            message or f"Process failed with exit code {result.exit_code}.",
            details={"command": result.command_string},
        )


class PipelineError(ResticOpsError):
    """Raised when a pipeline step fails an assertion (space, staging, snapshot lookup)."""

    pass


class LockError(ResticOpsError):
    """Raised when the operation lock store cannot be used."""

    pass


class StoreError(ResticOpsError):
    """Raised when the run/state database cannot be initialized."""

    pass
