# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
resticops Run State - Structured progress of one pipeline run.

Pipelines fill a RunState step by step and hand its to_meta() tree to the
runs store after every step. Failures are captured as StepFailure values
and only turned back into exceptions at the pipeline boundary.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from resticops.exceptions import ConfigurationError, ProcessError


FAILURE_CONFIGURATION = "configuration"
FAILURE_PROCESS = "process"
FAILURE_RUNTIME = "runtime"


@dataclass(frozen=True)
class StepFailure:
    """Why a run stopped."""

    step: str | None
    kind: str  # configuration, process, runtime
    message: str
    error_class: str = "Exception"

    def as_dict(self) -> Dict[str, Any]:
        return {"step": self.step, "kind": self.kind, "message": self.message}


def classify_failure(exc: BaseException) -> str:
    if isinstance(exc, ConfigurationError):
        return FAILURE_CONFIGURATION
    if isinstance(exc, ProcessError):
        return FAILURE_PROCESS
    return FAILURE_RUNTIME


@dataclass
class RunState:
    """
    Mutable progress record of a single run.

    ``fields`` holds top-level meta (trigger, tags, export details...),
    ``steps`` one sub-object per executed step.
    """

    run_type: str
    run_id: str | None = None
    fields: Dict[str, Any] = field(default_factory=dict)
    steps: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    current_step: str | None = None
    failure: StepFailure | None = None

    def begin(self, step: str) -> str:
        self.current_step = step
        return step

    def record(self, step: str, data: Any) -> None:
        self.steps[step] = data

    def step(self, name: str) -> Dict[str, Any]:
        """Return the mutable sub-object of a step, creating it if needed."""
        current = self.steps.get(name)
        if not isinstance(current, dict):
            current = {}
            self.steps[name] = current
        return current

    def set(self, key: str, value: Any) -> None:
        self.fields[key] = value

    def update(self, **values: Any) -> None:
        self.fields.update(values)

    def section(self, key: str) -> Dict[str, Any]:
        """Return a mutable top-level dict such as ``export`` or ``rollback``."""
        current = self.fields.get(key)
        if not isinstance(current, dict):
            current = {}
            self.fields[key] = current
        return current

    def warn(self, message: str) -> None:
        if message not in self.warnings:
            self.warnings.append(message)

    def fail(self, exc: BaseException, sanitize: Callable[[str], str] | None = None) -> StepFailure:
        """
        Capture exc as the run's failure at the current step.

        Args:
            exc: The exception that stopped the run
            sanitize: Applied to the message before it is stored

        Returns:
            The recorded StepFailure
        """
        message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
        if sanitize is not None:
            message = sanitize(message)
        self.failure = StepFailure(
            step=self.current_step,
            kind=classify_failure(exc),
            message=message,
            error_class=exc.__class__.__name__,
        )
        return self.failure

    def to_meta(self) -> Dict[str, Any]:
        """Serialize to the JSON meta tree stored with the run."""
        meta: Dict[str, Any] = dict(self.fields)
        if self.steps:
            meta["steps"] = self.steps
        if self.warnings:
            meta["warnings"] = list(self.warnings)
        if self.failure is not None:
            meta["step"] = self.failure.step
            meta["error_class"] = self.failure.error_class
            meta["error_message"] = self.failure.message
            meta["error"] = self.failure.as_dict()
        return meta
