# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
resticops - Restic-backed backup, restore and disaster-recovery export
orchestration for web projects.

Pipelines run under one shared operation lock, record every step in an
auditable run record, and leave a recoverable state when they crash.
"""

__version__ = "0.1.0"

# Settings creation (user-facing API)
from resticops.builder import create_settings

# Runtime state
from resticops.core import initialize_state

# Environment-based settings and retention profiles
from resticops.env import (
    create_settings_from_env,
    compliance_retention,
    lean_retention,
)

# Pipelines
from resticops.pipelines import (
    run_backup,
    run_restore,
    run_forget_snapshot,
    run_full_export,
    run_snapshot_export,
    run_delta_export,
)

__all__ = [
    # Version
    "__version__",
    # Settings creation (primary user-facing APIs)
    "create_settings",
    "create_settings_from_env",
    "compliance_retention",
    "lean_retention",
    # Runtime
    "initialize_state",
    # Pipelines
    "run_backup",
    "run_restore",
    "run_forget_snapshot",
    "run_full_export",
    "run_snapshot_export",
    "run_delta_export",
]
