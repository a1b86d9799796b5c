# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Delta disaster-recovery export.

The archive carries only what changed between the baseline snapshot (set
by the last full export) and the latest snapshot: changed files under
files/ and the deleted paths in manifest.json. TOOLS/restore.sh replays it
on top of an extracted full export.
"""

import re
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, Iterable, List

import aiosqlite
import structlog

from resticops.bundle import FILES_DIR, bundle_name, write_delta_manifest, write_readme_delta, write_tools
from resticops.config import RunType, Settings
from resticops.db.base import META_OUTPUT_LIMIT
from resticops.exceptions import PipelineError
from resticops.fs import (
    copy_entry,
    ensure_dir,
    is_excluded_relative_path,
    normalize_path,
    normalize_path_list,
    sanitize_relative_path,
)
from resticops.meta import RunState
from resticops.pipelines.archive import (
    ARCHIVE_FORMAT,
    DEFAULT_KEEP_HOURS,
    EXPORT_LOCK_TTL_SECONDS,
    discard_partial_archive,
    discard_workspace,
    expires_at_for,
    find_by_id,
    load_snapshots,
    pack_bundle,
    prepare_workspace,
    resolve_latest,
    schedule_archive_cleanup,
)
from resticops.pipelines.common import (
    HEARTBEAT_EVERY_SECONDS,
    LOCK_BLOCK_SECONDS,
    RunRecorder,
    lock_ttl,
    normalize_trigger,
    requeue_or_return,
    step_heartbeat,
    timestamp,
)
from resticops.process import step_meta, truncate_output
from resticops.runs import get_baseline

logger = structlog.get_logger()

KIND_DELTA = "dr-delta"
RESTORE_CHUNK_SIZE = 200

# restic prints "+"/"-"/"M" per path; older releases and other tools print A/M/D.
# T (type change) counts as modified, U (metadata only) is ignored.
_DIFF_LINE = re.compile(r"^([AMD+\-TU])\s+(.+)$")
_DIFF_KINDS = {
    "A": "added",
    "+": "added",
    "M": "modified",
    "T": "modified",
    "D": "deleted",
    "-": "deleted",
}


# ============================================================================
# Diff mapping
# ============================================================================

def parse_diff_output(output: str) -> Dict[str, List[str]]:
    """
    Split restic diff output into added, modified and deleted paths.

    Summary lines and unknown markers are skipped.
    """
    changes: Dict[str, List[str]] = {"added": [], "modified": [], "deleted": []}
    for line in output.splitlines():
        match = _DIFF_LINE.match(line.strip())
        if not match:
            continue
        kind = _DIFF_KINDS.get(match.group(1))
        path = match.group(2).strip()
        if kind is None or not path:
            continue
        changes[kind].append(path)
    return changes


def build_base_paths(project_root: str, *snapshot_paths: Iterable[str]) -> List[str]:
    """Project root first, then every path either snapshot declares, de-duplicated."""
    candidates = [project_root]
    for paths in snapshot_paths:
        candidates += [str(p) for p in paths]

    bases: List[str] = []
    for candidate in candidates:
        candidate = normalize_path(candidate)
        if candidate and candidate not in bases:
            bases.append(candidate)
    return bases


def resolve_relative_path(path: str, base_paths: List[str]) -> Dict[str, str] | None:
    """
    Map an absolute snapshot path to {relative, base}.

    The base itself and unsafe paths map to None. Relative input is kept
    with an empty base.
    """
    path = normalize_path(path)
    if not path:
        return None

    for base in base_paths:
        if path == base:
            return None
        if path.startswith(base + "/"):
            relative = sanitize_relative_path(path[len(base) + 1:])
            if relative is None:
                return None
            return {"relative": relative, "base": base}

    if not path.startswith("/"):
        relative = sanitize_relative_path(path)
        if relative is None:
            return None
        return {"relative": relative, "base": ""}

    return None


def map_diff_paths(paths: Iterable[str], base_paths: List[str]) -> List[Dict[str, str]]:
    entries = []
    for path in paths:
        entry = resolve_relative_path(path, base_paths)
        if entry is not None:
            entries.append(entry)
    return entries


def filter_excluded(entries: List[Dict[str, str]], exclude_paths: List[str]) -> List[Dict[str, str]]:
    if not exclude_paths:
        return entries
    return [e for e in entries if not is_excluded_relative_path(e["relative"], exclude_paths)]


def unique_relative_paths(entries: List[Dict[str, str]]) -> List[str]:
    seen: List[str] = []
    for entry in entries:
        if entry["relative"] not in seen:
            seen.append(entry["relative"])
    return seen


def include_paths_for(entries: List[Dict[str, str]]) -> List[str]:
    """Absolute snapshot paths to pass to `restic restore --include`."""
    paths: List[str] = []
    for entry in entries:
        path = entry["relative"] if not entry["base"] else f"{entry['base']}/{entry['relative']}"
        if path not in paths:
            paths.append(path)
    return paths


def restored_base_map(restore_dir: Path, base_paths: List[str]) -> Dict[str, Path]:
    """Where each base path landed inside the restore target."""
    mapping: Dict[str, Path] = {"": restore_dir}
    for base in base_paths:
        candidate = restore_dir / base.lstrip("/")
        if candidate.is_dir():
            mapping[base] = candidate
    return mapping


def copy_delta_entries(entries: List[Dict[str, str]], base_map: Dict[str, Path], files_dir: Path) -> List[str]:
    """
    Copy restored entries into files/.

    Returns:
        Relative paths that were not found in the restore
    """
    missing: List[str] = []
    for entry in entries:
        source_base = base_map.get(entry["base"]) or base_map.get("")
        relative = entry["relative"]
        if source_base is None or not copy_entry(source_base / relative, files_dir / relative):
            missing.append(relative)
    return missing


def chunked(items: List[str], size: int) -> List[List[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


# ============================================================================
# Pipeline
# ============================================================================

async def run_delta_export(
    settings: Settings,
    state: Dict[str, Any],
    keep_hours: int = DEFAULT_KEEP_HOURS,
    trigger: str | None = None,
    attempt: int = 1,
) -> str | None:
    """
    Build a delta archive from the baseline snapshot to the latest one.

    Args:
        settings: Settings snapshot
        state: Runtime state from initialize_state()
        keep_hours: Hours before the archive is deleted (at least 1)
        trigger: manual, schedule or system
        attempt: Queue attempt number, drives the requeue backoff

    Returns:
        The run id, or None if the lock was busy

    Raises:
        PipelineError: If no baseline is configured (before any run is
            recorded), or when a changed path is missing from the restore
    """
    trigger = normalize_trigger(trigger)

    async with aiosqlite.connect(state["state_db_path"]) as db:
        baseline = await get_baseline(db)
    if baseline is None:
        raise PipelineError("Baseline snapshot is not configured.")

    handle = await state["lock"].acquire(
        RunType.EXPORT_DELTA.value,
        lock_ttl(EXPORT_LOCK_TTL_SECONDS, settings.timeout),
        LOCK_BLOCK_SECONDS,
        {"trigger": trigger},
    )
    if handle is None:
        await requeue_or_return(
            state,
            RunType.EXPORT_DELTA.value,
            {"keep_hours": keep_hours, "trigger": trigger},
            attempt,
        )
        return None

    exclude_paths = normalize_path_list(settings.exclude_paths)
    run = RunState(RunType.EXPORT_DELTA.value)
    run.set("trigger", trigger)
    export = run.section("export")
    export.update(
        format=ARCHIVE_FORMAT,
        include_env=True,
        keep_hours=keep_hours,
        kind="delta",
        exclude_paths=exclude_paths,
    )

    restic = state["restic"]
    work_dir: Path | None = None
    archive_path: Path | None = None

    try:
        async with aiosqlite.connect(state["state_db_path"]) as db:
            recorder = RunRecorder(db, settings, run)
            try:
                await recorder.start()
                await handle.set_run_id(run.run_id)

                logger.info("export_started", run_id=run.run_id, type=run.run_type)

                snapshots = await load_snapshots(restic, run, recorder, settings.timeout)
                latest = resolve_latest(snapshots)
                if latest is None:
                    raise PipelineError("No snapshots found in the repository.")
                base_snapshot = find_by_id(snapshots, baseline["baseline_snapshot_id"])
                if base_snapshot is None:
                    raise PipelineError("Baseline snapshot was not found in the repository.")

                to_id = latest["id"]
                run.update(
                    snapshot_id=to_id,
                    snapshot_short_id=latest["short_id"],
                    baseline_snapshot_id=base_snapshot["id"],
                    baseline_snapshot_short_id=base_snapshot["short_id"],
                )
                export.update(baseline_snapshot_id=base_snapshot["id"], to_snapshot_id=to_id)

                stamp = timestamp()
                top_folder = bundle_name(settings.app_name, settings.app_env, KIND_DELTA, to_id, stamp)
                archive_name = f"{top_folder}.tar.gz"
                work_dir, restore_dir, bundle_dir = prepare_workspace(settings, run.run_id, stamp)
                archive_path = Path(settings.exports_dir) / archive_name
                export.update(archive_name=archive_name, archive_path=str(archive_path), work_dir=str(work_dir))
                await recorder.save()

                step = run.begin("restic_diff")
                await handle.heartbeat({"step": step})
                diff = await restic.diff(
                    base_snapshot["id"],
                    to_id,
                    timeout=settings.timeout,
                    heartbeat=step_heartbeat(handle, step),
                    heartbeat_every=HEARTBEAT_EVERY_SECONDS,
                )
                diff_meta = step_meta(diff, META_OUTPUT_LIMIT)
                run.record(step, diff_meta)
                await recorder.save()
                if not diff.ok:
                    raise PipelineError("Restic diff failed.")

                changes = parse_diff_output(diff.stdout)
                export["diff"] = {kind: len(paths) for kind, paths in changes.items()}

                base_paths = build_base_paths(str(settings.project_root), base_snapshot["paths"], latest["paths"])
                changed = filter_excluded(map_diff_paths(changes["added"] + changes["modified"], base_paths), exclude_paths)
                deleted = filter_excluded(map_diff_paths(changes["deleted"], base_paths), exclude_paths)
                deleted_relative = unique_relative_paths(deleted)

                export.update(
                    changed_files=len(unique_relative_paths(changed)),
                    deleted_files=len(deleted_relative),
                )
                await recorder.save()

                include_paths = include_paths_for(changed)
                if include_paths:
                    step = run.begin("restic_restore")
                    chunks: List[Dict[str, Any]] = []
                    overall_exit = 0
                    for index, chunk in enumerate(chunked(include_paths, RESTORE_CHUNK_SIZE), start=1):
                        await handle.heartbeat({"step": step, "chunk": index})
                        result = await restic.restore(
                            to_id,
                            restore_dir,
                            include=chunk,
                            exclude=exclude_paths or None,
                            timeout=settings.timeout,
                            max_output_bytes=META_OUTPUT_LIMIT,
                            heartbeat=step_heartbeat(handle, step),
                            heartbeat_every=HEARTBEAT_EVERY_SECONDS,
                        )
                        chunk_meta = step_meta(result)
                        chunk_meta.update(chunk_index=index, chunk_size=len(chunk))
                        chunks.append(chunk_meta)
                        if not result.ok:
                            overall_exit = result.exit_code
                            break

                    run.record(step, {"exit_code": overall_exit, "chunks": chunks})
                    await recorder.save()
                    if overall_exit != 0:
                        raise PipelineError("Restic restore failed.")

                target_dir = ensure_dir(bundle_dir / top_folder)
                files_dir = ensure_dir(target_dir / FILES_DIR)

                if changed:
                    missing = copy_delta_entries(changed, restored_base_map(restore_dir, base_paths), files_dir)
                    if missing:
                        export["missing_files"] = missing
                        await recorder.save()
                        raise PipelineError(
                            "Some delta files were not found in the restored snapshot.",
                            details={"missing": truncate_output("\n".join(missing[:50]), 4096)},
                        )

                generated_at = datetime.now(UTC).isoformat()
                export["generated_at"] = generated_at
                await write_delta_manifest(target_dir, base_snapshot["id"], to_id, generated_at, deleted_relative)
                await write_readme_delta(
                    target_dir,
                    {
                        "baseline_snapshot_id": base_snapshot["id"],
                        "to_snapshot_id": to_id,
                        "generated_at": generated_at,
                    },
                )
                await write_tools(target_dir)
                await recorder.save()

                export.update(await pack_bundle(run, recorder, handle, bundle_dir, top_folder, archive_path))

                expires_at = expires_at_for(keep_hours)
                export["expires_at"] = expires_at.isoformat()

                await schedule_archive_cleanup(state, recorder, expires_at)
                await recorder.succeed()
            except Exception as e:
                await recorder.fail(e)
                discard_partial_archive(archive_path)
                raise
    finally:
        discard_workspace(work_dir)
        await handle.release()

    logger.info("export_finished", run_id=run.run_id, type=run.run_type, archive=str(archive_path))

    return run.run_id
