# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
resticops Restic Runner - Argument builder and executor for the restic CLI.

Credentials never appear on the command line: they are injected through
RESTIC_REPOSITORY, RESTIC_PASSWORD, AWS_ACCESS_KEY_ID and
AWS_SECRET_ACCESS_KEY. All captured output is redacted before it is
returned, and failed calls get a best-effort diagnostics block.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence
from urllib.parse import urlparse

import structlog

from resticops.config import RetentionPolicy, Settings
from resticops.errors import explain_missing_restic_settings
from resticops.exceptions import ConfigurationError, ProcessError
from resticops.process import (
    DEFAULT_MAX_OUTPUT_BYTES,
    DEFAULT_TIMEOUT_SECONDS,
    Heartbeat,
    ProcessResult,
    run_command,
)

logger = structlog.get_logger()

_BASIC_AUTH = re.compile(r"(://)([^/@:]*):([^@/]*)@")

_RETENTION_FLAGS = {
    "keep_last": "--keep-last",
    "keep_daily": "--keep-daily",
    "keep_weekly": "--keep-weekly",
    "keep_monthly": "--keep-monthly",
    "keep_yearly": "--keep-yearly",
}

_PROXY_ENV_KEYS = (
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "ALL_PROXY",
    "NO_PROXY",
    "http_proxy",
    "https_proxy",
    "all_proxy",
    "no_proxy",
)

REPOSITORY_HINT = (
    "Restic repository is not initialized or unreachable. Check repository URL, "
    "credentials, and network, or run `restic -r <repo> init` for a new repository."
)


def normalize_list(value: str | Iterable[Any] | None) -> List[str]:
    """Turn a string or iterable into a list of trimmed, non-empty strings."""
    if value is None:
        return []
    if isinstance(value, (str, int, float)):
        value = [value]
    items: List[str] = []
    for item in value:
        if not isinstance(item, (str, int, float)) or isinstance(item, bool):
            continue
        text = str(item).strip()
        if text:
            items.append(text)
    return items


def _scalar(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def resolve_repository(settings: Settings) -> str | None:
    """
    Resolve the restic repository string from settings.

    An explicit restic_repository wins. Otherwise the repository is built
    as ``s3:<endpoint>/<bucket>[/<prefix>]`` when both endpoint and bucket
    are set.
    """
    repository = _scalar(settings.restic_repository)
    if repository is not None:
        return repository

    endpoint = _scalar(settings.endpoint)
    bucket = _scalar(settings.bucket)
    if endpoint is None or bucket is None:
        return None

    repository = f"s3:{endpoint.rstrip('/')}/{bucket.strip('/')}"
    prefix = _scalar(settings.prefix)
    if prefix is not None:
        repository += "/" + prefix.lstrip("/")
    return repository


def redact_basic_auth(value: str) -> str:
    return _BASIC_AUTH.sub(r"\1***:***@", value)


def redact_output(output: str, secrets: Sequence[str], repository: str | None) -> str:
    """
    Scrub repository credentials and known secrets from captured text.

    The repository string is replaced first (so its basic-auth part is
    masked as a whole), then every secret value, then any remaining
    ``scheme://user:pass@`` fragment.
    """
    if output == "":
        return output

    if repository and "@" in repository:
        output = output.replace(repository, redact_basic_auth(repository))

    for secret in secrets:
        if secret:
            output = output.replace(secret, "***")

    return redact_basic_auth(output)


def repository_host(repository: str | None) -> str | None:
    """Host name of a URL-style repository, if any."""
    if repository is None:
        return None
    value = repository[3:] if repository.startswith("s3:") else repository
    value = value.strip()
    if not value:
        return None
    host = urlparse(value).hostname
    return host or None


def no_proxy_allows_host(no_proxy: str, host: str) -> bool:
    """Whether a NO_PROXY list covers host (``*``, exact match or domain suffix)."""
    for item in (part.strip() for part in no_proxy.split(",")):
        if not item:
            continue
        if item == "*" or item == host:
            return True
        suffix = item.lstrip(".")
        if suffix and host.endswith(suffix):
            return True
    return False


def _proxy_hint(stderr: str, repository: str | None) -> str | None:
    message = stderr.lower()
    if not (
        "proxyconnect" in message
        or "socks5" in message
        or ("proxy" in message and "dial tcp" in message)
    ):
        return None

    hint = "Proxy error detected."
    present = [key for key in _PROXY_ENV_KEYS if os.environ.get(key)]
    if present:
        hint += " Environment proxy variables set: " + ", ".join(present) + "."

    host = repository_host(repository)
    if host is not None:
        no_proxy = os.environ.get("NO_PROXY") or os.environ.get("no_proxy")
        if not no_proxy:
            hint += f" Consider adding {host} to NO_PROXY or unsetting proxy for the worker."
        elif not no_proxy_allows_host(no_proxy, host):
            hint += f" NO_PROXY does not include {host}; consider adding it."

    return hint


def _repository_hint(stderr: str) -> str | None:
    message = stderr.lower()
    if "unable to open config file" in message or "is there a repository at" in message:
        return REPOSITORY_HINT
    return None


def append_diagnostics(stderr: str, repository: str | None) -> str:
    """
    Append a ``Diagnostics:`` block with hints for known failure patterns.

    Empty stderr, stderr that already carries diagnostics, and stderr with
    no recognised pattern are returned unchanged.
    """
    if stderr == "" or "Diagnostics:" in stderr:
        return stderr

    hints = [h for h in (_proxy_hint(stderr, repository), _repository_hint(stderr)) if h]
    if not hints:
        return stderr

    return stderr.rstrip() + "\n\nDiagnostics:\n- " + "\n- ".join(hints)


def ensure_directory(path: Path | str, *, must_be_writable: bool = False, context: str = "directory") -> None:
    """
    Create a directory if missing, optionally requiring write access.

    Raises:
        ConfigurationError: Naming ``context`` as the missing setting
    """
    text = str(path).strip()
    if not text:
        return
    target = Path(text)
    try:
        target.mkdir(mode=0o755, parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigurationError(f"Unable to create {context} [{text}].", missing=[context]) from e
    if must_be_writable and not os.access(target, os.W_OK):
        raise ConfigurationError(f"{context} [{text}] is not writable.", missing=[context])


class ResticRunner:
    """
    Stateless command builder over the restic binary.

    Each call reads repository, credentials and paths from the settings
    snapshot given at construction time.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def repository(self) -> str | None:
        return resolve_repository(self.settings)

    def _needs_aws_credentials(self, repository: str | None) -> bool:
        if repository is not None and repository.startswith("s3:"):
            return True
        return _scalar(self.settings.endpoint) is not None or _scalar(self.settings.bucket) is not None

    def build_environment(self, requires_repository: bool = True) -> Dict[str, str]:
        """
        Build the credential environment for one restic call.

        Raises:
            ConfigurationError: Listing every missing field, in order
        """
        if not requires_repository:
            return {}

        repository = self.repository
        password = _scalar(self.settings.restic_password)
        access_key = _scalar(self.settings.access_key)
        secret_key = _scalar(self.settings.secret_key)

        missing: List[str] = []
        if repository is None:
            missing.append("restic_repository")
        if password is None:
            missing.append("restic_password")
        if self._needs_aws_credentials(repository):
            if access_key is None:
                missing.append("access_key")
            if secret_key is None:
                missing.append("secret_key")

        if missing:
            raise ConfigurationError(explain_missing_restic_settings(missing), missing=missing)

        env = {"RESTIC_REPOSITORY": repository, "RESTIC_PASSWORD": password}
        if access_key is not None:
            env["AWS_ACCESS_KEY_ID"] = access_key
        if secret_key is not None:
            env["AWS_SECRET_ACCESS_KEY"] = secret_key
        return env

    def redact(self, output: str) -> str:
        return redact_output(output, self.settings.secrets, self.repository)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def snapshots(
        self,
        *,
        tags: str | Iterable[str] | None = None,
        hosts: str | Iterable[str] | None = None,
        paths: str | Iterable[str] | None = None,
        **options: Any,
    ) -> ProcessResult:
        """
        List snapshots as JSON.

        Args:
            tags: Only snapshots with these tags
            hosts: Only snapshots from these hosts
            paths: Only snapshots covering these paths
            **options: Execution options (see _run)

        Returns:
            ProcessResult whose parsed_json is the snapshot list
        """
        command = ["snapshots", "--json"]
        command += _multi_option("--tag", tags)
        command += _multi_option("--host", hosts)
        command += _multi_option("--path", paths)
        return await self._run(command, expects_json=True, **options)

    async def backup(
        self,
        paths: str | Iterable[str],
        tags: Iterable[str] = (),
        *,
        exclude: str | Iterable[str] | None = None,
        include: str | Iterable[str] | None = None,
        as_json: bool = False,
        **options: Any,
    ) -> ProcessResult:
        """
        Create a snapshot of paths.

        Raises:
            ConfigurationError: If no paths are given
        """
        command = ["backup"]
        if as_json:
            command.append("--json")
        command += _multi_option("--tag", tags)
        command += _multi_option("--exclude", exclude)
        command += _multi_option("--include", include)

        path_list = normalize_list(paths)
        if not path_list:
            raise ConfigurationError("Backup paths are required.", missing=["paths"])
        command += path_list

        return await self._run(command, expects_json=as_json, **options)

    async def forget(
        self,
        retention: RetentionPolicy | Mapping[str, Any],
        *,
        prune: bool = True,
        as_json: bool = False,
        **options: Any,
    ) -> ProcessResult:
        """
        Apply a retention policy, pruning unreferenced data by default.

        Non-numeric or empty counts are skipped.
        """
        values = retention.as_flags() if isinstance(retention, RetentionPolicy) else dict(retention)

        command = ["forget"]
        if as_json:
            command.append("--json")
        for key, flag in _RETENTION_FLAGS.items():
            value = values.get(key)
            if value is None or value == "" or isinstance(value, bool):
                continue
            try:
                count = int(value)
            except (TypeError, ValueError):
                continue
            command += [flag, str(count)]
        if prune:
            command.append("--prune")

        return await self._run(command, expects_json=as_json, **options)

    async def forget_snapshot(self, snapshot_id: str, *, prune: bool = True, **options: Any) -> ProcessResult:
        """Remove one snapshot by id."""
        snapshot_id = snapshot_id.strip()
        if not snapshot_id:
            raise ConfigurationError("Snapshot ID is required for forget.", missing=["snapshot_id"])
        command = ["forget", snapshot_id]
        if prune:
            command.append("--prune")
        return await self._run(command, **options)

    async def check(self, *, read_data_subset: str | None = None, as_json: bool = False, **options: Any) -> ProcessResult:
        """Verify repository integrity."""
        command = ["check"]
        if as_json:
            command.append("--json")
        if read_data_subset is not None:
            command += ["--read-data-subset", str(read_data_subset)]
        return await self._run(command, expects_json=as_json, **options)

    async def restore(
        self,
        snapshot_id: str,
        target_dir: Path | str,
        *,
        include: str | Iterable[str] | None = None,
        exclude: str | Iterable[str] | None = None,
        paths: str | Iterable[str] | None = None,
        as_json: bool = False,
        **options: Any,
    ) -> ProcessResult:
        """
        Restore a snapshot into target_dir.

        The target is created if needed and must be writable.

        Args:
            snapshot_id: Full or short snapshot id
            target_dir: Restore destination
            include: Only restore these paths
            exclude: Skip these paths
            paths: Snapshot path filter
            as_json: Ask restic for JSON progress output
            **options: Execution options (see _run)

        Returns:
            ProcessResult of the restore
        """
        ensure_directory(target_dir, must_be_writable=True, context="target_dir")

        command = ["restore", snapshot_id, "--target", str(target_dir)]
        if as_json:
            command.append("--json")
        command += _multi_option("--include", include)
        command += _multi_option("--exclude", exclude)
        command += _multi_option("--path", paths)

        return await self._run(command, expects_json=as_json, **options)

    async def diff(self, snapshot_a: str, snapshot_b: str, **options: Any) -> ProcessResult:
        """
        Compare two snapshots.

        Output is kept whole by default so every changed path can be
        parsed; callers truncate it when storing it in meta.
        """
        options.setdefault("max_output_bytes", None)
        return await self._run(["diff", snapshot_a, snapshot_b], **options)

    async def stats_restore_size(self, snapshot_id: str, **options: Any) -> ProcessResult:
        """Report how many bytes restoring a snapshot would write."""
        snapshot_id = snapshot_id.strip()
        if not snapshot_id:
            raise ConfigurationError("Snapshot ID is required for stats.", missing=["snapshot_id"])
        command = ["stats", "--mode", "restore-size", "--json", snapshot_id]
        return await self._run(command, expects_json=True, **options)

    async def version(self) -> ProcessResult:
        return await self._run(["version"], requires_repository=False)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run(
        self,
        arguments: List[str],
        *,
        requires_repository: bool = True,
        expects_json: bool = False,
        timeout: float | None = DEFAULT_TIMEOUT_SECONDS,
        max_output_bytes: int | None = DEFAULT_MAX_OUTPUT_BYTES,
        heartbeat: Heartbeat | None = None,
        heartbeat_every: float = 20,
        env: Mapping[str, Any] | None = None,
        throw: bool = False,
    ) -> ProcessResult:
        """
        Run restic with credentials, redaction and diagnostics applied.

        Args:
            arguments: restic subcommand and its arguments
            requires_repository: Whether credentials must be resolved
            expects_json: Parse stdout as JSON / NDJSON
            timeout: Seconds before restic is killed
            max_output_bytes: Byte ceiling for captured output
            heartbeat: Awaited periodically while restic runs
            heartbeat_every: Heartbeat interval in seconds
            env: Extra environment variables
            throw: Raise ProcessError on a non-zero exit

        Returns:
            ProcessResult with redacted output

        Raises:
            ConfigurationError: If required settings are missing
            ProcessError: If throw is set and restic fails
        """
        process_env = self.build_environment(requires_repository)
        for key, value in (env or {}).items():
            if key and value is not None:
                process_env[key] = str(value)

        settings = self.settings
        if settings.cache_dir is not None:
            ensure_directory(settings.cache_dir, context="cache_dir")
        ensure_directory(settings.backup_dir, context="work_dir")

        project_root = str(settings.project_root).strip()
        if not project_root:
            raise ConfigurationError("Project root directory is empty.", missing=["project_root"])
        if not Path(project_root).is_dir():
            raise ConfigurationError(
                f"Project root directory [{project_root}] does not exist.",
                missing=["project_root"],
            )

        command = [settings.restic_binary or "restic"]
        if settings.cache_dir is not None:
            command += ["--cache-dir", str(settings.cache_dir)]
        command += arguments

        repository = self.repository if requires_repository else None

        result = await run_command(
            command,
            cwd=project_root,
            env=process_env,
            timeout=timeout,
            max_output_bytes=max_output_bytes,
            heartbeat=heartbeat,
            heartbeat_every=heartbeat_every,
            redact=self.redact,
            on_failure=lambda stderr: append_diagnostics(stderr, repository),
            expects_json=expects_json,
        )

        logger.info(
            "restic_command_finished",
            subcommand=arguments[0] if arguments else "",
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
        )

        if throw and result.exit_code != 0:
            raise ProcessError(result, f"Restic process failed with exit code {result.exit_code}.")

        return result


def _multi_option(option: str, value: str | Iterable[Any] | None) -> List[str]:
    args: List[str] = []
    for item in normalize_list(value):
        args += [option, item]
    return args
