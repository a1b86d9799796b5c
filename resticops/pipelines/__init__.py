# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Pipelines - Backup, restore, forget and export runs.
"""

from resticops.pipelines.backup import run_backup
from resticops.pipelines.export_delta import run_delta_export
from resticops.pipelines.export_full import run_full_export, run_snapshot_export
from resticops.pipelines.forget import run_forget_snapshot
from resticops.pipelines.restore import run_restore

__all__ = [
    "run_backup",
    "run_restore",
    "run_forget_snapshot",
    "run_full_export",
    "run_snapshot_export",
    "run_delta_export",
]
