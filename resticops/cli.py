# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
resticops CLI - Operator commands.

Settings are read from the environment (see resticops.env). Pipelines
dispatched here run later in `resticops work`; `--sync` runs them inline.
"""

import asyncio
from typing import List, Optional

import aiosqlite
import typer

from resticops.cleanup import cleanup_expired_archives, cleanup_rollback_dirs
from resticops.config import Settings
from resticops.core import initialize_state
from resticops.env import create_settings_from_env
from resticops.exceptions import ResticOpsError
from resticops.lock import DEFAULT_STALE_SECONDS
from resticops.pipelines.backup import run_backup
from resticops.queue import dispatch, run_worker

app = typer.Typer(
    name="resticops",
    help="Restic backup, restore and disaster-recovery export orchestration.",
    no_args_is_help=True,
    pretty_exceptions_enable=False,
)

LOCK_INFO_FIELDS = ("type", "run_id", "started_at", "last_heartbeat_at", "hostname", "pid", "expires_at")


def load_settings() -> Settings:
    try:
        return create_settings_from_env()
    except ResticOpsError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)


def parse_tags(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [tag.strip() for tag in value.split(",") if tag.strip()]


@app.command("run-backup")
def run_backup_command(
    tags: Optional[str] = typer.Option(None, "--tags", help="Comma-separated snapshot tags"),
    trigger: str = typer.Option("manual", "--trigger", help="manual, schedule or system"),
    connection: Optional[str] = typer.Option(None, "--connection", help="Database connection name"),
    sync: bool = typer.Option(False, "--sync", help="Run now instead of queueing"),
) -> None:
    """Dump the database, snapshot the project and apply retention."""
    settings = load_settings()
    tag_list = parse_tags(tags)

    async def _run() -> None:
        state = await initialize_state(settings, queue_enabled=not sync)
        if sync:
            await run_backup(settings, state, tags=tag_list, trigger=trigger, connection=connection)
            return
        async with aiosqlite.connect(state["state_db_path"]) as db:
            await dispatch(
                db,
                "backup",
                {"tags": tag_list, "trigger": trigger, "connection": connection, "run_retention": True},
            )

    try:
        asyncio.run(_run())
    except ResticOpsError as e:
        typer.echo(f"Backup failed: {e.message}", err=True)
        raise typer.Exit(code=1)

    typer.echo("Backup job executed synchronously." if sync else "Backup job dispatched to queue.")


@app.command("cleanup-exports")
def cleanup_exports_command(
    hours: int = typer.Option(24, "--hours", help="Age of stale work directories"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only report what would be removed"),
) -> None:
    """Delete expired export archives and stale work directories."""
    settings = load_settings()

    async def _run():
        state = await initialize_state(settings, queue_enabled=False)
        return await cleanup_expired_archives(settings, state, hours=hours, dry_run=dry_run)

    report = asyncio.run(_run())

    verb = "Would remove" if dry_run else "Removed"
    for archive in report["archives"]:
        typer.echo(f"{verb} expired archive for run {archive['run_id']} ({archive['path'] or 'no file'})")
    for path in report["work_dirs"]:
        typer.echo(f"{verb}: {path}")
    for skipped in report["skipped"]:
        typer.echo(f"Skip ({skipped['reason']}): {skipped['path']}", err=True)

    typer.echo(
        f"Cleanup completed. Removed {len(report['archives'])} archives "
        f"and {len(report['work_dirs'])} work directories."
    )


@app.command("cleanup-rollbacks")
def cleanup_rollbacks_command(
    hours: int = typer.Option(24, "--hours", help="Age of rollback directories to remove"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only report what would be removed"),
) -> None:
    """Remove rollback directories left by atomic restores."""
    settings = load_settings()
    report = cleanup_rollback_dirs(settings, hours=hours, dry_run=dry_run)

    if report.get("error"):
        typer.echo(report["error"], err=True)
        raise typer.Exit(code=1)

    for path in report["would_remove"]:
        typer.echo(f"Would remove: {path}")
    for path in report["removed"]:
        typer.echo(f"Removed: {path}")
    for skipped in report["skipped"]:
        typer.echo(f"Skip ({skipped['reason']}): {skipped['path']}", err=True)

    typer.echo(f"Cleanup completed. Removed {len(report['removed'])} rollback directories.")


@app.command("unlock")
def unlock_command(
    force: bool = typer.Option(False, "--force", help="Do not ask for confirmation"),
    stale: bool = typer.Option(False, "--stale", help="Only unlock when the holder stopped heartbeating"),
    stale_seconds: int = typer.Option(DEFAULT_STALE_SECONDS, "--stale-seconds", help="Heartbeat age that counts as stale"),
) -> None:
    """Release the operation lock held by a crashed run."""
    settings = load_settings()

    async def _info():
        state = await initialize_state(settings, queue_enabled=False)
        lock = state["lock"]
        return lock, await lock.get_info(), await lock.is_stale(stale_seconds)

    lock, info, is_stale = asyncio.run(_info())

    if info is None:
        typer.echo("Lock info not found.")
    else:
        typer.echo("Current lock info:")
        for field in LOCK_INFO_FIELDS:
            typer.echo(f"  {field}: {info.get(field)}")

    if stale and not is_stale:
        typer.echo("Lock is not stale. Skipping unlock.")
        return

    if not force:
        answer = typer.prompt("Type UNLOCK to confirm", default="")
        if answer.strip() not in ("UNLOCK", "yes"):
            typer.echo("Unlock cancelled.")
            raise typer.Exit(code=1)

    if asyncio.run(lock.force_release()):
        typer.echo("Lock released.")
    else:
        typer.echo("Failed to release lock.", err=True)
        raise typer.Exit(code=1)


@app.command("work")
def work_command(
    once: bool = typer.Option(False, "--once", help="Run the due jobs and exit"),
) -> None:
    """Run queued pipeline jobs."""
    settings = load_settings()

    async def _run() -> int:
        state = await initialize_state(settings, queue_enabled=True)
        return await run_worker(settings, state, once=once)

    processed = asyncio.run(_run())
    typer.echo(f"Processed {processed} jobs.")


if __name__ == "__main__":
    app()
