"""Launch and stop server processes, and run shell commands.

HTTP servers under test are started with ``sh -c <start_command>`` in a
session of their own, so that shell wrappers, package runners and the
server they spawn can be stopped together by signalling the whole process
group.  All waits are asyncio sleeps; blocking subprocess calls are pushed
to a worker thread with ``asyncio.to_thread()``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from typing import Mapping, Protocol

from .config import DEFAULT_GRACE_PERIOD, DEFAULT_STARTUP_WAIT_MS, merge_env

logger = logging.getLogger(__name__)

# How often to re-check a terminating process.
_POLL_INTERVAL = 0.1  # seconds

# Process groups are a POSIX feature.
_HAS_PROCESS_GROUPS = hasattr(os, "killpg") and sys.platform != "win32"


class CommandError(Exception):
    """Raised when a shell command exits with a non-zero status."""

    def __init__(self, command: str, returncode: int) -> None:
        super().__init__(f"Command failed with exit code {returncode}: {command}")
        self.command = command
        self.returncode = returncode


class ServerStartError(Exception):
    """Raised when a server process exits before it finished starting."""


class ProcessHandle(Protocol):
    """Control surface for a running server process."""

    @property
    def pid(self) -> int: ...

    @property
    def returncode(self) -> int | None: ...

    def is_running(self) -> bool: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


class _PopenHandle:
    def __init__(self, proc: subprocess.Popen) -> None:
        self._proc = proc

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.poll()

    def is_running(self) -> bool:
        return self._proc.poll() is None


class ProcessGroupHandle(_PopenHandle):
    """Signals the whole process group led by the child (POSIX).

    The group can outlive its leader when a wrapper shell exits on SIGTERM
    and the server it started does not, so ``is_running()`` checks the
    group and not just the leader.
    """

    def is_running(self) -> bool:
        if self._proc.poll() is None:
            return True
        try:
            os.killpg(self._proc.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def terminate(self) -> None:
        os.killpg(self._proc.pid, signal.SIGTERM)

    def kill(self) -> None:
        os.killpg(self._proc.pid, signal.SIGKILL)


class PlainProcessHandle(_PopenHandle):
    """Signals only the child process (platforms without process groups)."""

    def terminate(self) -> None:
        self._proc.terminate()

    def kill(self) -> None:
        self._proc.kill()


def _shell_argv(command: str) -> list[str]:
    if sys.platform == "win32":
        return ["cmd", "/c", command]
    return ["sh", "-c", command]


async def spawn_server(
    command: str,
    cwd: str,
    env_overrides: Mapping[str, str] | None = None,
    *,
    startup_wait_ms: int = DEFAULT_STARTUP_WAIT_MS,
) -> ProcessHandle:
    """Start a server process and wait for it to settle.

    Args:
        command: Shell command line starting the server.
        cwd: Working directory for the server.
        env_overrides: Variables applied on top of the inherited environment.
        startup_wait_ms: How long to wait before checking the process.

    Returns:
        Handle for the running server.

    Raises:
        ServerStartError: If the process exits during the startup wait.
    """
    env = merge_env(os.environ, env_overrides or {})
    logger.info("Starting server: %s", command)
    proc = subprocess.Popen(
        _shell_argv(command),
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=_HAS_PROCESS_GROUPS,
    )
    handle: ProcessHandle = ProcessGroupHandle(proc) if _HAS_PROCESS_GROUPS else PlainProcessHandle(proc)

    logger.info("Waiting %dms for server to start...", startup_wait_ms)
    await asyncio.sleep(startup_wait_ms / 1000)

    if not handle.is_running():
        raise ServerStartError(f"Server exited prematurely with code {handle.returncode}: {command}")

    logger.debug("Server running (pid %d)", handle.pid)
    return handle


async def stop_server(
    handle: ProcessHandle | None,
    *,
    grace_period: float = DEFAULT_GRACE_PERIOD,
) -> None:
    """Terminate a server, escalating to kill after ``grace_period`` seconds.

    Best effort: failures are logged, never raised, since the process may
    already be gone.
    """
    if handle is None:
        return

    logger.info("Stopping server (pid %d)...", handle.pid)
    try:
        handle.terminate()
    except (ProcessLookupError, PermissionError, OSError) as exc:
        logger.debug("Error stopping server: %s", exc)
        return

    loop = asyncio.get_running_loop()
    deadline = loop.time() + grace_period
    while loop.time() < deadline:
        if not handle.is_running():
            return
        await asyncio.sleep(_POLL_INTERVAL)

    logger.warning("Server (pid %d) ignored SIGTERM, killing", handle.pid)
    try:
        handle.kill()
    except (ProcessLookupError, PermissionError, OSError) as exc:
        logger.debug("Error killing server: %s", exc)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of a completed shell command."""

    command: str
    returncode: int
    output: str = ""


def _run_blocking(command: str, cwd: str, env: dict[str, str]) -> CommandResult:
    completed = subprocess.run(
        _shell_argv(command),
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
    )
    return CommandResult(command=command, returncode=completed.returncode, output=completed.stdout or "")


async def run_shell(
    command: str,
    cwd: str,
    env_overrides: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run a shell command to completion.

    Raises:
        CommandError: If the command exits non-zero.
    """
    env = merge_env(os.environ, env_overrides or {})
    result = await asyncio.to_thread(_run_blocking, command, cwd, env)
    for line in result.output.splitlines():
        logger.debug("  [%s] %s", command.split(" ", 1)[0], line)
    if result.returncode != 0:
        raise CommandError(command, result.returncode)
    return result


async def run_build(cwd: str, install_command: str | None, build_command: str | None) -> None:
    """Run the install command, then the build command, in ``cwd``."""
    if install_command:
        logger.info("Running install: %s", install_command)
        await run_shell(install_command, cwd)
    if build_command:
        logger.info("Running build: %s", build_command)
        await run_shell(build_command, cwd)
