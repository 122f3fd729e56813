"""Environments a configuration is probed in.

Each configuration is probed twice: once against the current working
tree and once against the comparison ref.  An environment owns the
working directory for one side and walks a small state machine::

    idle --prepare()--> prepared --start_probing()--> probing --teardown()--> torn_down

``teardown()`` is reached on every path, including errors raised while
preparing or probing, because environments are used as async context
managers.

The comparison environment prefers a linked worktree of the comparison
ref.  When that fails (for example because the ref is already checked
out elsewhere) it checks the ref out in place and returns to the
previous ref on teardown.  Only one comparison environment is live at a
time; the runner processes configurations strictly in sequence.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from .config import (
    DEFAULT_GRACE_PERIOD,
    DEFAULT_SERVER_TIMEOUT,
    DEFAULT_STARTUP_WAIT_MS,
    CustomMessage,
    TestConfiguration,
    Transport,
    merge_env,
    parse_env_vars,
)
from .git import GitRepo
from .probe import ProbeOptions, probe_server
from .process import CommandError, ProcessHandle, run_build, run_shell, spawn_server, stop_server
from .snapshot import CapabilitySnapshot

logger = logging.getLogger(__name__)

# Directory (inside the repository) used for the comparison worktree.
WORKTREE_DIRNAME = ".conformance-base"

ProbeFn = Callable[[ProbeOptions], Awaitable[CapabilitySnapshot]]


class Side(str, Enum):
    CURRENT = "current"
    COMPARISON = "comparison"


class EnvironmentState(str, Enum):
    IDLE = "idle"
    PREPARED = "prepared"
    PROBING = "probing"
    TORN_DOWN = "torn_down"


class EnvironmentStateError(RuntimeError):
    """Raised on an illegal environment state transition."""


@dataclass(frozen=True)
class ProbeContext:
    """Everything needed to probe one configuration on one side.

    Passed by value down the pipeline instead of re-deriving mode flags at
    each call site.

    Attributes:
        side: Which environment this probe runs against.
        work_dir: Directory commands and stdio servers run in.
        env_overrides: Variables applied on top of the inherited environment.
        headers: HTTP headers for streamable-http probes.
        custom_messages: Messages sent after the standard listings.
        use_shared_server: True when an already-running shared HTTP server
            serves this probe, so no per-configuration server is started.
        timeout: Read timeout for the protocol client, in seconds.
        grace_period: Seconds a stopping server gets before it is killed.
    """

    side: Side
    work_dir: str
    env_overrides: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    custom_messages: tuple[CustomMessage, ...] = ()
    use_shared_server: bool = False
    timeout: float = DEFAULT_SERVER_TIMEOUT
    grace_period: float = DEFAULT_GRACE_PERIOD

    @classmethod
    def for_config(
        cls,
        config: TestConfiguration,
        *,
        side: Side,
        work_dir: str,
        global_env: dict[str, str],
        global_headers: dict[str, str],
        global_messages: list[CustomMessage],
        use_shared_server: bool = False,
        timeout: float = DEFAULT_SERVER_TIMEOUT,
    ) -> ProbeContext:
        """Merge global settings with per-configuration overrides."""
        messages = config.custom_messages if config.custom_messages is not None else global_messages
        return cls(
            side=side,
            work_dir=work_dir,
            env_overrides=merge_env(global_env, parse_env_vars(config.env_vars)),
            headers={**global_headers, **config.headers},
            custom_messages=tuple(messages),
            use_shared_server=use_shared_server,
            timeout=timeout,
        )


class Environment:
    """One side's working directory and its lifecycle state."""

    side = Side.CURRENT

    def __init__(self, work_dir: str) -> None:
        self.work_dir = work_dir
        self.state = EnvironmentState.IDLE

    def _transition(self, expected: EnvironmentState, target: EnvironmentState) -> None:
        if self.state is not expected:
            raise EnvironmentStateError(
                f"{self.side.value} environment: cannot go from {self.state.value} to {target.value}"
            )
        self.state = target

    async def prepare(self) -> str:
        """Materialize the working directory; returns it."""
        self._transition(EnvironmentState.IDLE, EnvironmentState.PREPARED)
        return self.work_dir

    def start_probing(self) -> str:
        """Mark the environment as being probed; returns the working directory."""
        self._transition(EnvironmentState.PREPARED, EnvironmentState.PROBING)
        return self.work_dir

    async def _release(self) -> None:
        """Undo whatever ``prepare()`` did."""

    async def teardown(self) -> None:
        if self.state is EnvironmentState.TORN_DOWN:
            return
        try:
            if self.state is not EnvironmentState.IDLE:
                await self._release()
        finally:
            self.state = EnvironmentState.TORN_DOWN

    async def __aenter__(self) -> Environment:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.teardown()


class CurrentEnvironment(Environment):
    """The working tree as it is; nothing to materialize or release."""


class ExternalEnvironment(Environment):
    """Comparison side served by an external command instead of a git ref."""

    side = Side.COMPARISON


class ComparisonEnvironment(Environment):
    """A build of the comparison ref: worktree first, in-place checkout second.

    Args:
        repo: Repository the ref lives in.
        ref: Comparison ref.
        install_command: Optional install command run after materializing.
        build_command: Optional build command run after installing.
    """

    side = Side.COMPARISON

    def __init__(
        self,
        repo: GitRepo,
        ref: str,
        *,
        install_command: str | None = None,
        build_command: str | None = None,
    ) -> None:
        super().__init__(repo.path)
        self.repo = repo
        self.ref = ref
        self.install_command = install_command
        self.build_command = build_command
        self.worktree_path = os.path.join(repo.path, WORKTREE_DIRNAME)
        self.used_worktree = False
        self.needs_restore = False

    async def prepare(self) -> str:
        if self.state is not EnvironmentState.IDLE:
            raise EnvironmentStateError(f"comparison environment already {self.state.value}")

        logger.info("Setting up comparison ref: %s", self.ref)
        self.used_worktree = await self.repo.create_worktree(self.ref, self.worktree_path)
        if self.used_worktree:
            self.work_dir = self.worktree_path
        else:
            logger.info("  Worktree not available, using checkout")
            await self.repo.checkout(self.ref)
            self.needs_restore = True
            self.work_dir = self.repo.path
        self.state = EnvironmentState.PREPARED

        logger.info("Building on comparison ref...")
        try:
            await run_build(self.work_dir, self.install_command, self.build_command)
        except CommandError as exc:
            # Older revisions may not build with current tooling.
            logger.warning("  Build failed on comparison ref, continuing: %s", exc)
        return self.work_dir

    async def _release(self) -> None:
        if self.used_worktree:
            await self.repo.remove_worktree(self.worktree_path)
        elif self.needs_restore:
            await self.repo.checkout_previous()
        self.work_dir = self.repo.path


def build_probe_options(config: TestConfiguration, ctx: ProbeContext) -> ProbeOptions:
    """Translate a configuration plus context into transport parameters."""
    if config.transport is Transport.STDIO:
        argv = config.command_argv()
        return ProbeOptions(
            transport=Transport.STDIO,
            command=argv[0] if argv else None,
            args=argv[1:],
            cwd=ctx.work_dir,
            env=merge_env(os.environ, ctx.env_overrides),
            custom_messages=list(ctx.custom_messages),
            timeout=ctx.timeout,
        )
    return ProbeOptions(
        transport=Transport.STREAMABLE_HTTP,
        url=config.server_url,
        headers=dict(ctx.headers),
        custom_messages=list(ctx.custom_messages),
        timeout=ctx.timeout,
    )


async def run_pre_test_command(config: TestConfiguration, work_dir: str) -> None:
    """Run the pre-test command and its settle delay; errors propagate."""
    if not config.pre_test_command:
        return
    logger.info("  Running pre-test command: %s", config.pre_test_command)
    await run_shell(config.pre_test_command, work_dir)
    if config.pre_test_wait_ms and config.pre_test_wait_ms > 0:
        logger.info("  Waiting %dms for service to be ready...", config.pre_test_wait_ms)
        await asyncio.sleep(config.pre_test_wait_ms / 1000)


async def run_post_test_command(config: TestConfiguration, work_dir: str) -> None:
    """Run the post-test command; failures are logged and swallowed."""
    if not config.post_test_command:
        return
    logger.info("  Running post-test command: %s", config.post_test_command)
    try:
        await run_shell(config.post_test_command, work_dir)
    except (CommandError, OSError) as exc:
        logger.warning("  Post-test command failed: %s", exc)


async def probe_with_config(
    config: TestConfiguration,
    ctx: ProbeContext,
    *,
    probe: ProbeFn = probe_server,
) -> CapabilitySnapshot:
    """Probe ``config`` in ``ctx``, managing hooks and a per-probe server.

    Order: pre-test command, (HTTP) server start, probe, server stop,
    post-test command.  The post-test command runs whatever the outcome and
    never replaces it.
    """
    try:
        await run_pre_test_command(config, ctx.work_dir)

        if config.transport is Transport.STDIO:
            # stdio servers are spawned by the protocol client itself.
            return await probe(build_probe_options(config, ctx))

        server: ProcessHandle | None = None
        try:
            if config.start_command and not ctx.use_shared_server:
                server = await spawn_server(
                    config.start_command,
                    ctx.work_dir,
                    ctx.env_overrides,
                    startup_wait_ms=_startup_wait(config),
                )
            return await probe(build_probe_options(config, ctx))
        finally:
            await stop_server(server, grace_period=ctx.grace_period)
    finally:
        await run_post_test_command(config, ctx.work_dir)


def _startup_wait(config: TestConfiguration) -> int:
    if config.startup_wait_ms is not None:
        return config.startup_wait_ms
    if config.pre_test_wait_ms is not None:
        return config.pre_test_wait_ms
    return DEFAULT_STARTUP_WAIT_MS
