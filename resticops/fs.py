# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
resticops Filesystem - Tree removal, space checks and path helpers.

Directory walks use an explicit worklist and visit children before their
parents, so deep trees never hit the recursion limit.
"""

import hashlib
import os
import shutil
import stat
import time
from pathlib import Path
from typing import Dict, Iterable, List

import structlog

from resticops.exceptions import PipelineError
from resticops.process import find_binary, run_command

logger = structlog.get_logger()

GIB = 1024 * 1024 * 1024


def _walk_children_first(root: Path) -> List[Path]:
    """
    List every entry under root, deepest entries first.

    Symlinks are listed but never followed.
    """
    ordered: List[Path] = []
    pending = [root]
    while pending:
        current = pending.pop()
        try:
            with os.scandir(current) as entries:
                for entry in entries:
                    path = Path(entry.path)
                    ordered.append(path)
                    if entry.is_dir(follow_symlinks=False):
                        pending.append(path)
        except OSError as e:
            logger.warning("directory_scan_failed", path=str(current), error=str(e))
    # A parent is always appended before its children, so reversing puts children first
    ordered.reverse()
    return ordered


def remove_tree(path: Path | str) -> List[str]:
    """
    Delete a file, symlink or directory tree.

    Args:
        path: What to delete; a missing path is not an error

    Returns:
        Error messages for entries that could not be removed
    """
    target = Path(path)
    errors: List[str] = []

    if target.is_symlink() or target.is_file():
        try:
            target.unlink()
        except OSError as e:
            errors.append(f"Failed to remove file: {target} ({e})")
        return errors

    if not target.is_dir():
        return errors

    for entry in _walk_children_first(target):
        try:
            if entry.is_dir() and not entry.is_symlink():
                entry.rmdir()
            else:
                entry.unlink()
        except OSError as e:
            errors.append(f"Failed to remove: {entry} ({e})")

    try:
        target.rmdir()
    except OSError as e:
        errors.append(f"Failed to remove directory: {target} ({e})")

    return errors


def clear_directory(path: Path | str) -> List[str]:
    """Remove everything inside a directory, keeping the directory itself."""
    target = Path(path)
    errors: List[str] = []
    try:
        children = list(target.iterdir())
    except OSError:
        return [f"Unable to read directory: {target}"]
    for child in children:
        errors.extend(remove_tree(child))
    return errors


def same_filesystem(path_a: Path | str, path_b: Path | str) -> bool:
    """Whether two existing paths live on the same device."""
    try:
        return os.stat(path_a).st_dev == os.stat(path_b).st_dev
    except OSError:
        return False


def free_bytes(path: Path | str) -> int | None:
    """Bytes available to unprivileged users on path's filesystem."""
    try:
        vfs = os.statvfs(path)
    except (OSError, AttributeError):
        try:
            return shutil.disk_usage(path).free
        except OSError:
            return None
    return vfs.f_bavail * vfs.f_frsize


async def directory_size(path: Path | str) -> int | None:
    """
    Size of a directory tree in bytes, as reported by ``du -sb``.

    Returns None when du is unavailable or fails.
    """
    target = Path(str(path).rstrip(os.sep) or os.sep)
    if not target.is_dir():
        return None

    try:
        du = find_binary(["du"])
    except PipelineError:
        return None

    result = await run_command([du, "-sb", str(target)], cwd=target.parent, timeout=600)
    if result.exit_code != 0:
        return None

    parts = result.stdout.strip().split()
    if not parts or not parts[0].isdigit():
        return None
    return int(parts[0])


def sha256_file(path: Path | str, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def ensure_dir(path: Path | str) -> Path:
    target = Path(path)
    target.mkdir(mode=0o755, parents=True, exist_ok=True)
    return target


# ============================================================================
# Path helpers
# ============================================================================

def normalize_path(value: str) -> str:
    """Trim, convert backslashes to slashes and drop trailing slashes."""
    value = value.strip()
    if not value:
        return ""
    return value.replace("\\", "/").rstrip("/")


def normalize_path_list(paths: Iterable[object]) -> List[str]:
    """Relative, slash-normalized, de-duplicated path list."""
    normalized: Dict[str, bool] = {}
    for path in paths:
        if not isinstance(path, (str, int, float)) or isinstance(path, bool):
            continue
        text = str(path).strip().replace("\\", "/").strip("/")
        if text:
            normalized[text] = True
    return list(normalized)


def sanitize_relative_path(value: str) -> str | None:
    """
    Clean a path meant to stay inside a bundle.

    Leading slashes and ``./`` segments are stripped. Paths with empty,
    ``.`` or ``..`` segments are rejected.

    Returns:
        The cleaned relative path, or None if it is unsafe or empty
    """
    value = value.strip()
    if not value:
        return None

    value = value.replace("\\", "/").lstrip("/")
    while value.startswith("./"):
        value = value[2:]
    if not value:
        return None

    parts = value.split("/")
    for part in parts:
        if part in ("", ".", ".."):
            return None
    return "/".join(parts)


def is_excluded_relative_path(relative: str, exclude_paths: Iterable[str]) -> bool:
    """Whether relative equals an exclude path or sits underneath one."""
    relative = normalize_path(relative).lstrip("/")
    if not relative:
        return False

    for exclude in exclude_paths:
        exclude = normalize_path(str(exclude)).lstrip("/")
        if not exclude:
            continue
        if relative == exclude or relative.startswith(exclude + "/"):
            return True
    return False


def apply_excludes(root: Path | str, exclude_paths: Iterable[str]) -> List[str]:
    """
    Delete excluded subpaths from an extracted tree.

    Returns:
        The relative paths that were removed
    """
    root = Path(root)
    removed: List[str] = []
    for relative in normalize_path_list(exclude_paths):
        target = root / relative
        if not (target.exists() or target.is_symlink()):
            continue
        remove_tree(target)
        removed.append(relative)
    return removed


def copy_entry(source: Path, destination: Path) -> bool:
    """
    Copy one restored entry into a bundle.

    Directories are created, symlinks recreated with the same target and
    regular files copied with their mode and times.

    Returns:
        False if source is missing or of another kind
    """
    try:
        mode = os.lstat(source).st_mode
    except OSError:
        return False

    if stat.S_ISLNK(mode):
        target = os.readlink(source)
        destination.parent.mkdir(parents=True, exist_ok=True)
        if destination.is_symlink() or destination.exists():
            destination.unlink()
        os.symlink(target, destination)
        return True

    if stat.S_ISDIR(mode):
        destination.mkdir(parents=True, exist_ok=True)
        return True

    if not stat.S_ISREG(mode):
        return False

    destination.parent.mkdir(parents=True, exist_ok=True)
    try:
        shutil.copy2(source, destination)
    except OSError as e:
        logger.warning("copy_failed", source=str(source), error=str(e))
        return False
    return True


def move_path(source: Path | str, destination: Path | str) -> Dict[str, object]:
    """
    Move a directory (rename when possible) and describe the outcome as step meta.

    Returns:
        Dict with exit_code, duration_ms, source, destination and stderr
    """
    start = time.monotonic()
    stderr = ""
    try:
        shutil.move(str(source), str(destination))
        exit_code = 0
    except OSError as e:
        exit_code = 1
        stderr = str(e)
        logger.warning("move_failed", source=str(source), destination=str(destination), error=stderr)

    return {
        "exit_code": exit_code,
        "duration_ms": int(round((time.monotonic() - start) * 1000)),
        "source": str(source),
        "destination": str(destination),
        "stderr": stderr,
    }
