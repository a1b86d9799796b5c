# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
resticops Bundle - Layout and packing of disaster-recovery archives.

A bundle is one top-level folder named
``<app>-<env>-<kind>-<shortid>-<timestamp>`` holding the exported tree (full)
or the changed files (delta), a README.txt, a manifest.json for deltas and
TOOLS/restore.sh + TOOLS/restore.ps1 that replay a delta on top of an
extracted full export.
"""

import json
import os
import re
import tarfile
from pathlib import Path
from typing import Any, Dict, List

import aiofiles
import structlog

from resticops.exceptions import PipelineError

logger = structlog.get_logger()

README_NAME = "README.txt"
MANIFEST_NAME = "manifest.json"
SNAPSHOT_MANIFEST_NAME = "_snapshot_export.json"
TOOLS_DIR = "TOOLS"
RESTORE_SH = "restore.sh"
RESTORE_PS1 = "restore.ps1"
FILES_DIR = "files"

ARCHIVE_MODE = 0o640

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")


def slugify(value: str, fallback: str = "app") -> str:
    """Lowercase ASCII slug for archive names."""
    slug = _SLUG_INVALID.sub("-", value.strip().lower()).strip("-")
    return slug or fallback


def bundle_name(app: str, env: str, kind: str, snapshot_id: str, stamp: str) -> str:
    """
    Top-level folder (and archive stem) of a bundle.

    Args:
        app: Application name
        env: Application environment
        kind: dr-full, dr-delta or snapshot
        snapshot_id: Snapshot the bundle was built from
        stamp: YYYYmmddHHMMSS timestamp
    """
    short_id = snapshot_id[:8] if snapshot_id else "unknown"
    return f"{slugify(app)}-{slugify(env, 'env')}-{kind}-{short_id}-{stamp}"


def build_readme_full(context: Dict[str, Any]) -> str:
    lines = [
        "Disaster Recovery Export (FULL)",
        f"Snapshot: {context.get('snapshot_id') or 'unknown'}",
    ]
    if context.get("generated_at"):
        lines.append(f"Generated at: {context['generated_at']}")
    lines += [
        "",
        "This archive is a plain, unencrypted copy of the project.",
        "Completeness depends on the snapshot include/exclude settings.",
        "",
        "Restore options:",
        "1) Full only",
        "   - Extract the FULL archive into the target directory.",
        "2) Full + Delta",
        "   - Extract the FULL and DELTA archives.",
        "   - Run TOOLS/restore.sh <full_dir> <delta_dir>",
        "   - Or TOOLS/restore.ps1 -FullDir <full_dir> -DeltaDir <delta_dir>",
        "",
        "Database dump (if present): storage/app/_backup/db.sql.gz",
    ]
    return "\n".join(lines) + "\n"


def build_readme_delta(context: Dict[str, Any]) -> str:
    lines = [
        "Disaster Recovery Export (DELTA)",
        f"Baseline snapshot: {context.get('baseline_snapshot_id') or 'unknown'}",
        f"Target snapshot: {context.get('to_snapshot_id') or 'unknown'}",
    ]
    if context.get("generated_at"):
        lines.append(f"Generated at: {context['generated_at']}")
    lines += [
        "",
        "This archive contains the changes since the baseline snapshot.",
        "Apply it on top of the FULL archive with the restore scripts.",
        f"Deleted paths are listed in {MANIFEST_NAME}.",
        "",
        "Usage:",
        "- TOOLS/restore.sh <full_dir> <delta_dir>",
        "- TOOLS/restore.ps1 -FullDir <full_dir> -DeltaDir <delta_dir>",
    ]
    return "\n".join(lines) + "\n"


RESTORE_SH_SCRIPT = r"""#!/usr/bin/env bash
# Apply a DELTA export on top of an extracted FULL export.
set -euo pipefail

if [[ $# -lt 1 ]]; then
  echo "Usage: restore.sh <full_dir> [delta_dir]" >&2
  exit 1
fi

FULL_DIR="$1"
DELTA_DIR="${2:-}"

if [[ ! -d "$FULL_DIR" ]]; then
  echo "Full directory not found: $FULL_DIR" >&2
  exit 1
fi
FULL_DIR="$(cd "$FULL_DIR" && pwd)"

if [[ -z "$DELTA_DIR" ]]; then
  echo "No delta directory given, nothing to apply."
  exit 0
fi

if [[ ! -d "$DELTA_DIR" ]]; then
  echo "Delta directory not found: $DELTA_DIR" >&2
  exit 1
fi
DELTA_DIR="$(cd "$DELTA_DIR" && pwd)"

FILES_DIR="$DELTA_DIR/files"
MANIFEST="$DELTA_DIR/manifest.json"

if [[ ! -d "$FILES_DIR" ]]; then
  echo "Delta files directory not found: $FILES_DIR" >&2
  exit 1
fi

if [[ ! -f "$MANIFEST" ]]; then
  echo "Manifest not found: $MANIFEST" >&2
  exit 1
fi

PYTHON="$(command -v python3 || command -v python || true)"
if [[ -z "$PYTHON" ]]; then
  echo "python3 is required to read $MANIFEST" >&2
  exit 1
fi

safe_relative() {
  local path="${1//\\//}"
  path="${path#./}"
  [[ -z "$path" || "$path" == /* ]] && return 1
  local IFS="/"
  local part
  for part in $path; do
    [[ -z "$part" || "$part" == "." || "$part" == ".." ]] && return 1
  done
  printf '%s\n' "$path"
}

cd "$FILES_DIR"

while IFS= read -r -d "" entry; do
  rel="${entry#./}"
  [[ "$rel" == "." ]] && continue
  if ! safe=$(safe_relative "$rel"); then
    echo "Skip unsafe path: $rel" >&2
    continue
  fi
  mkdir -p "$FULL_DIR/$safe"
done < <(find . -type d -print0)

while IFS= read -r -d "" entry; do
  rel="${entry#./}"
  if ! safe=$(safe_relative "$rel"); then
    echo "Skip unsafe path: $rel" >&2
    continue
  fi
  mkdir -p "$(dirname "$FULL_DIR/$safe")"
  rm -rf "$FULL_DIR/$safe"
  cp -a "$entry" "$FULL_DIR/$safe"
done < <(find . \( -type f -o -type l \) -print0)

while IFS= read -r path; do
  [[ -z "$path" ]] && continue
  if ! safe=$(safe_relative "$path"); then
    echo "Skip unsafe delete path: $path" >&2
    continue
  fi
  if [[ -e "$FULL_DIR/$safe" || -L "$FULL_DIR/$safe" ]]; then
    rm -rf "$FULL_DIR/$safe"
  fi
done < <("$PYTHON" -c 'import json, sys
for p in json.load(open(sys.argv[1])).get("deleted", []):
    if isinstance(p, str):
        print(p)' "$MANIFEST")

echo "Delta applied."
"""


RESTORE_PS1_SCRIPT = "\r\n".join([
    "# Apply a DELTA export on top of an extracted FULL export.",
    "param(",
    "  [Parameter(Mandatory = $true)][string]$FullDir,",
    '  [string]$DeltaDir = ""',
    ")",
    "",
    "if (-not (Test-Path -LiteralPath $FullDir)) {",
    '  Write-Error "Full directory not found: $FullDir"',
    "  exit 1",
    "}",
    "$FullDir = (Resolve-Path -LiteralPath $FullDir).Path",
    "",
    "if ([string]::IsNullOrWhiteSpace($DeltaDir)) {",
    '  Write-Output "No delta directory given, nothing to apply."',
    "  exit 0",
    "}",
    "if (-not (Test-Path -LiteralPath $DeltaDir)) {",
    '  Write-Error "Delta directory not found: $DeltaDir"',
    "  exit 1",
    "}",
    "$DeltaDir = (Resolve-Path -LiteralPath $DeltaDir).Path",
    '$FilesDir = Join-Path $DeltaDir "files"',
    '$Manifest = Join-Path $DeltaDir "manifest.json"',
    "",
    "if (-not (Test-Path -LiteralPath $FilesDir)) {",
    '  Write-Error "Delta files directory not found: $FilesDir"',
    "  exit 1",
    "}",
    "if (-not (Test-Path -LiteralPath $Manifest)) {",
    '  Write-Error "Manifest not found: $Manifest"',
    "  exit 1",
    "}",
    "",
    "function Get-SafeRelativePath([string]$Path) {",
    '  $Path = $Path -replace "\\\\", "/"',
    '  while ($Path.StartsWith("./")) { $Path = $Path.Substring(2) }',
    '  if ([string]::IsNullOrWhiteSpace($Path) -or $Path.StartsWith("/")) { return $null }',
    '  foreach ($part in $Path.Split("/")) {',
    '    if ($part -eq "" -or $part -eq "." -or $part -eq "..") { return $null }',
    "  }",
    "  return $Path",
    "}",
    "",
    "foreach ($item in Get-ChildItem -LiteralPath $FilesDir -Force -Recurse) {",
    '  $rel = Get-SafeRelativePath ($item.FullName.Substring($FilesDir.Length).TrimStart("\\", "/"))',
    "  if ($null -eq $rel) {",
    '    Write-Warning "Skip unsafe path: $($item.FullName)"',
    "    continue",
    "  }",
    "  $dest = Join-Path $FullDir $rel",
    "  if ($item.PSIsContainer) {",
    "    New-Item -ItemType Directory -Force -Path $dest | Out-Null",
    "  } else {",
    "    New-Item -ItemType Directory -Force -Path (Split-Path -Parent $dest) | Out-Null",
    "    Copy-Item -LiteralPath $item.FullName -Destination $dest -Force",
    "  }",
    "}",
    "",
    "$data = Get-Content -LiteralPath $Manifest -Raw | ConvertFrom-Json",
    "foreach ($path in $data.deleted) {",
    "  $rel = Get-SafeRelativePath $path",
    "  if ($null -eq $rel) {",
    '    Write-Warning "Skip unsafe delete path: $path"',
    "    continue",
    "  }",
    "  $target = Join-Path $FullDir $rel",
    "  if (Test-Path -LiteralPath $target) {",
    "    Remove-Item -LiteralPath $target -Recurse -Force",
    "  }",
    "}",
    "",
    'Write-Output "Delta applied."',
    "",
])


async def _write_text(path: Path, content: str, mode: int | None = None) -> None:
    async with aiofiles.open(path, "w", encoding="utf-8", newline="") as f:
        await f.write(content)
    if mode is not None:
        os.chmod(path, mode)


async def write_tools(base_dir: Path) -> Path:
    """Write TOOLS/restore.sh (0755) and TOOLS/restore.ps1 (0644)."""
    tools_dir = base_dir / TOOLS_DIR
    tools_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
    await _write_text(tools_dir / RESTORE_SH, RESTORE_SH_SCRIPT, 0o755)
    await _write_text(tools_dir / RESTORE_PS1, RESTORE_PS1_SCRIPT, 0o644)
    return tools_dir


async def write_readme_full(base_dir: Path, context: Dict[str, Any]) -> Path:
    path = base_dir / README_NAME
    await _write_text(path, build_readme_full(context))
    return path


async def write_readme_delta(base_dir: Path, context: Dict[str, Any]) -> Path:
    path = base_dir / README_NAME
    await _write_text(path, build_readme_delta(context))
    return path


async def write_json(path: Path, payload: Dict[str, Any]) -> Path:
    await _write_text(path, json.dumps(payload, indent=2, ensure_ascii=False) + "\n")
    return path


async def write_delta_manifest(
    base_dir: Path,
    baseline_snapshot_id: str,
    to_snapshot_id: str,
    generated_at: str,
    deleted: List[str],
) -> Path:
    """Write manifest.json listing the paths removed since the baseline."""
    return await write_json(
        base_dir / MANIFEST_NAME,
        {
            "baseline_snapshot_id": baseline_snapshot_id,
            "to_snapshot_id": to_snapshot_id,
            "generated_at": generated_at,
            "deleted": deleted,
        },
    )


def pack_archive(bundle_root: Path, archive_path: Path) -> Path:
    """
    Pack a bundle folder into a tar.gz with mode 0640.

    The archive contains exactly one top-level folder named like
    bundle_root. Symlinks are stored as links.

    Args:
        bundle_root: The top-level folder to pack
        archive_path: Destination .tar.gz

    Returns:
        archive_path

    Raises:
        PipelineError: If packing fails
    """
    archive_path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
    try:
        with tarfile.open(archive_path, "w:gz") as tar:
            tar.add(bundle_root, arcname=bundle_root.name)
    except (OSError, tarfile.TarError) as e:
        raise PipelineError(
            "Archive packing failed.",
            details={"archive_path": str(archive_path), "error": str(e)},
        )

    os.chmod(archive_path, ARCHIVE_MODE)

    logger.info("archive_packed", archive_path=str(archive_path), bundle=bundle_root.name)

    return archive_path
