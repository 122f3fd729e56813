"""Comparison pipeline.

For every configuration, strictly in order::

    probe current tree --error--> result(error)
          |
    prepare comparison ref, probe it --error--> result(error)
          |
    canonicalize both snapshots, diff section by section --> result

Configurations are independent: an exception escaping one of them is
recorded as that configuration's error and the loop continues.  The only
state shared between configurations is the optional shared HTTP server,
which is started once before the loop and stopped once after it.
"""

from __future__ import annotations

import logging
import os
import shlex
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import (
    DEFAULT_SERVER_TIMEOUT,
    DEFAULT_STARTUP_WAIT_MS,
    CustomMessage,
    ServerConfig,
    TestConfiguration,
    Transport,
    merge_env,
)
from .diff import DEFAULT_LIMITS, DiffEntry, RenderLimits, compare_sections
from .environment import (
    ComparisonEnvironment,
    CurrentEnvironment,
    Environment,
    ExternalEnvironment,
    ProbeContext,
    ProbeFn,
    Side,
    probe_with_config,
)
from .git import GitRepo
from .probe import ProbeOptions, describe_error, probe_server
from .process import ProcessHandle, spawn_server, stop_server
from .snapshot import CapabilitySnapshot, PrimitiveCounts, extract_counts

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """The three mutually exclusive results of a comparison."""

    NO_DIFFERENCES = "no_differences"
    DIFFERENCES = "differences"
    ERROR = "error"


@dataclass
class ComparisonResult:
    """Result of comparing one configuration (or one target server).

    ``error`` means the comparison could not be completed; it is never
    reported as a match or as a difference.
    """

    config_name: str
    transport: str
    branch_time_ms: int = 0
    base_time_ms: int = 0
    diffs: dict[str, list[DiffEntry]] = field(default_factory=dict)
    error: str | None = None
    branch_counts: PrimitiveCounts | None = None
    base_counts: PrimitiveCounts | None = None
    branch_files: dict[str, str] = field(default_factory=dict)
    base_files: dict[str, str] = field(default_factory=dict)

    @property
    def outcome(self) -> Outcome:
        if self.error is not None:
            return Outcome.ERROR
        if self.diffs:
            return Outcome.DIFFERENCES
        return Outcome.NO_DIFFERENCES

    @property
    def has_differences(self) -> bool:
        return self.outcome is Outcome.DIFFERENCES

    @property
    def entry_count(self) -> int:
        return sum(len(entries) for entries in self.diffs.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "configName": self.config_name,
            "transport": self.transport,
            "outcome": self.outcome.value,
            "branchTime": self.branch_time_ms,
            "baseTime": self.base_time_ms,
            "hasDifferences": self.has_differences,
            "error": self.error,
            "branchCounts": self.branch_counts.to_dict() if self.branch_counts else None,
            "baseCounts": self.base_counts.to_dict() if self.base_counts else None,
            "diffs": {
                section: [entry.to_dict() for entry in entries]
                for section, entries in self.diffs.items()
            },
        }


def compare_snapshots(
    base: CapabilitySnapshot,
    branch: CapabilitySnapshot,
    *,
    limits: RenderLimits = DEFAULT_LIMITS,
) -> dict[str, list[DiffEntry]]:
    """Diff two successful snapshots section by section."""
    return compare_sections(base.sections(), branch.sections(), limits=limits)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


@dataclass(frozen=True)
class RunSettings:
    """Run-wide settings shared by every configuration.

    Attributes:
        repo_dir: Repository root; the current side runs here.
        compare_ref: Git ref the comparison side is built from.
        install_command: Install command run on the comparison side.
        build_command: Build command run on the comparison side.
        env_vars: Global environment overrides.
        headers: Global HTTP headers.
        custom_messages: Global custom messages.
        http_start_command: Starts the shared HTTP server (enables shared mode).
        http_startup_wait_ms: Startup wait for shared/base HTTP servers.
        server_timeout: Protocol read timeout in seconds.
        results_dir: Where per-configuration results are written (``None``: not saved).
    """

    repo_dir: str
    compare_ref: str
    install_command: str | None = None
    build_command: str | None = None
    env_vars: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    custom_messages: list[CustomMessage] = field(default_factory=list)
    http_start_command: str | None = None
    http_startup_wait_ms: int = DEFAULT_STARTUP_WAIT_MS
    server_timeout: float = DEFAULT_SERVER_TIMEOUT
    results_dir: str | None = None


class ConformanceRunner:
    """Runs every configuration against the current tree and the comparison ref.

    Args:
        settings: Run-wide settings.
        repo: Git repository; defaults to ``settings.repo_dir``.
        probe: Snapshot collector (replaceable for tests).
        limits: Truncation thresholds for rendered diff values.
    """

    def __init__(
        self,
        settings: RunSettings,
        *,
        repo: GitRepo | None = None,
        probe: ProbeFn = probe_server,
        limits: RenderLimits = DEFAULT_LIMITS,
    ) -> None:
        self.settings = settings
        self.repo = repo or GitRepo(settings.repo_dir)
        self.probe = probe
        self.limits = limits

    def _context(
        self,
        config: TestConfiguration,
        side: Side,
        work_dir: str,
        use_shared_server: bool,
    ) -> ProbeContext:
        return ProbeContext.for_config(
            config,
            side=side,
            work_dir=work_dir,
            global_env=self.settings.env_vars,
            global_headers=self.settings.headers,
            global_messages=self.settings.custom_messages,
            use_shared_server=use_shared_server,
            timeout=self.settings.server_timeout,
        )

    def _comparison_environment(self, config: TestConfiguration) -> Environment:
        if config.base_start_command:
            return ExternalEnvironment(self.settings.repo_dir)
        return ComparisonEnvironment(
            self.repo,
            self.settings.compare_ref,
            install_command=self.settings.install_command,
            build_command=self.settings.build_command,
        )

    async def run_all(self, configs: list[TestConfiguration]) -> list[ComparisonResult]:
        """Run every configuration in order.

        Shared mode is on when an HTTP start command is set and at least one
        HTTP configuration exists: one server is started for the current
        tree before the loop and stopped after it.

        Raises:
            ServerStartError: If the shared server fails to start.
        """
        settings = self.settings
        use_shared = bool(settings.http_start_command) and any(c.is_http for c in configs)
        results: list[ComparisonResult] = []
        shared_server: ProcessHandle | None = None

        try:
            if use_shared:
                logger.info("Starting shared HTTP server: %s", settings.http_start_command)
                shared_server = await spawn_server(
                    settings.http_start_command,
                    settings.repo_dir,
                    settings.env_vars,
                    startup_wait_ms=settings.http_startup_wait_ms,
                )

            for config in configs:
                try:
                    result = await self.run_config(
                        config, use_shared_server=use_shared and config.is_http
                    )
                except Exception as exc:
                    logger.error("Failed to run configuration %s: %s", config.name, describe_error(exc))
                    result = ComparisonResult(
                        config_name=config.name,
                        transport=config.transport.value,
                        error=describe_error(exc),
                    )
                results.append(result)

                if settings.results_dir:
                    from .reporter import save_result

                    save_result(result, settings.results_dir)
        finally:
            if shared_server is not None:
                logger.info("Stopping shared HTTP server...")
                await stop_server(shared_server)

        return results

    async def run_config(
        self, config: TestConfiguration, *, use_shared_server: bool = False
    ) -> ComparisonResult:
        """Compare one configuration between the current tree and the comparison ref.

        Args:
            config: Configuration to run.
            use_shared_server: The shared HTTP server already serves the
                current tree, so no per-configuration server is started there.
        """
        result = ComparisonResult(config_name=config.name, transport=config.transport.value)
        logger.info("Testing configuration: %s (%s)", config.name, config.transport.value)

        # -- Current tree -----------------------------------------------------
        logger.info("Testing current branch...")
        async with CurrentEnvironment(self.settings.repo_dir) as current:
            await current.prepare()
            ctx = self._context(config, Side.CURRENT, current.start_probing(), use_shared_server)
            start = time.monotonic()
            branch = await probe_with_config(config, ctx, probe=self.probe)
            result.branch_time_ms = _elapsed_ms(start)

        if branch.error is not None:
            logger.warning("Error on current branch: %s", branch.error)
            result.error = f"Current branch probe failed: {branch.error}"
            return result

        result.branch_counts = extract_counts(branch)
        result.branch_files = branch.to_files()

        # -- Comparison side --------------------------------------------------
        external = bool(config.base_start_command)
        base_config = config.for_external_base() if external else config

        async with self._comparison_environment(config) as comparison:
            work_dir = await comparison.prepare()

            # The shared server runs current-tree code; the comparison side
            # always gets its own process.
            base_server: ProcessHandle | None = None
            try:
                if use_shared_server and not external and self.settings.http_start_command:
                    logger.info("Starting HTTP server for base ref testing...")
                    base_server = await spawn_server(
                        self.settings.http_start_command,
                        work_dir,
                        self.settings.env_vars,
                        startup_wait_ms=self.settings.http_startup_wait_ms,
                    )

                logger.info("Testing comparison ref...")
                ctx = self._context(
                    base_config,
                    Side.COMPARISON,
                    comparison.start_probing(),
                    use_shared_server=base_server is not None,
                )
                start = time.monotonic()
                base = await probe_with_config(base_config, ctx, probe=self.probe)
                result.base_time_ms = _elapsed_ms(start)
            finally:
                if base_server is not None:
                    logger.info("Stopping base ref HTTP server...")
                    await stop_server(base_server)

        if base.error is not None:
            logger.warning("Error on base ref: %s", base.error)
            result.error = f"Base ref probe failed: {base.error}"
            return result

        result.base_counts = extract_counts(base)
        result.base_files = base.to_files()
        result.diffs = compare_snapshots(base, branch, limits=self.limits)

        if result.diffs:
            logger.warning(
                "Configuration %s: %d differences found", config.name, result.entry_count
            )
        else:
            logger.info("Configuration %s: no differences", config.name)
        return result


# --- Server-vs-server mode ---


def server_probe_options(config: ServerConfig, timeout: float = DEFAULT_SERVER_TIMEOUT) -> ProbeOptions:
    """Transport parameters for a standalone server config.

    Raises:
        ValueError: If the config lacks the command/URL its transport needs.
    """
    if config.transport is Transport.STDIO:
        if not config.start_command:
            raise ValueError(f"No start_command for stdio server: {config.name}")
        argv = shlex.split(config.start_command)
        return ProbeOptions(
            transport=Transport.STDIO,
            command=argv[0],
            args=argv[1:],
            env=merge_env(os.environ, config.env_vars),
            timeout=timeout,
        )
    if not config.server_url:
        raise ValueError(f"No server_url for HTTP server: {config.name}")
    return ProbeOptions(
        transport=Transport.STREAMABLE_HTTP,
        url=config.server_url,
        headers=dict(config.headers),
        timeout=timeout,
    )


async def _probe_server_config(
    config: ServerConfig, probe: ProbeFn, timeout: float
) -> tuple[CapabilitySnapshot, int]:
    start = time.monotonic()
    try:
        snapshot = await probe(server_probe_options(config, timeout))
    except ValueError as exc:
        snapshot = CapabilitySnapshot.failed(str(exc))
    return snapshot, _elapsed_ms(start)


async def compare_servers(
    base: ServerConfig,
    targets: list[ServerConfig],
    *,
    probe: ProbeFn = probe_server,
    timeout: float = DEFAULT_SERVER_TIMEOUT,
    limits: RenderLimits = DEFAULT_LIMITS,
) -> list[ComparisonResult]:
    """Compare each target server against one base server.

    The base is probed once.  If it fails, every target gets an error
    result; a failing target only affects its own result.
    """
    logger.info("Probing base: %s", base.name)
    base_snapshot, base_time = await _probe_server_config(base, probe, timeout)

    if base_snapshot.error is not None:
        logger.error("Failed to probe base server: %s", base_snapshot.error)
        return [
            ComparisonResult(
                config_name=target.name,
                transport=target.transport.value,
                base_time_ms=base_time,
                error=f"Base server probe failed: {base_snapshot.error}",
            )
            for target in targets
        ]

    base_counts = extract_counts(base_snapshot)
    base_files = base_snapshot.to_files()
    results: list[ComparisonResult] = []

    for target in targets:
        logger.info("Probing target: %s", target.name)
        snapshot, target_time = await _probe_server_config(target, probe, timeout)
        result = ComparisonResult(
            config_name=target.name,
            transport=target.transport.value,
            branch_time_ms=target_time,
            base_time_ms=base_time,
            base_counts=base_counts,
            base_files=base_files,
        )
        if snapshot.error is not None:
            result.error = f"Target probe failed: {snapshot.error}"
        else:
            result.branch_counts = extract_counts(snapshot)
            result.branch_files = snapshot.to_files()
            result.diffs = compare_snapshots(base_snapshot, snapshot, limits=limits)
        results.append(result)

    return results
