"""Helpers shared by the test modules."""

import os
import sys
from pathlib import Path

from mcp_server_diff.config import Transport
from mcp_server_diff.probe import ProbeOptions
from mcp_server_diff.snapshot import CapabilitySnapshot

FIXTURES = Path(__file__).parent / "fixtures"
FIXTURE_SERVER = FIXTURES / "mcp_fixture_server.py"
PARTIAL_SERVER = FIXTURES / "partial_server.py"


def fixture_command(script: Path = FIXTURE_SERVER) -> str:
    """Shell command line that starts a fixture server with this interpreter."""
    return f'"{sys.executable}" "{script}"'


def stdio_options(script: Path = FIXTURE_SERVER, timeout: float = 20.0, **env: str) -> ProbeOptions:
    return ProbeOptions(
        transport=Transport.STDIO,
        command=sys.executable,
        args=[str(script)],
        env={**os.environ, **env},
        timeout=timeout,
    )


def make_snapshot(*tool_names: str, instructions: str | None = None) -> CapabilitySnapshot:
    """Snapshot of a server exposing tools with the given names."""
    return CapabilitySnapshot(
        initialize={"serverInfo": {"name": "fake", "version": "1.0.0"}, "capabilities": {"tools": {}}},
        instructions=instructions,
        tools={"tools": [{"name": name, "inputSchema": {"type": "object"}} for name in tool_names]},
    )
