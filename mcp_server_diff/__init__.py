"""mcp-server-diff: detect drift in an MCP server's public interface.

This package probes a Model Context Protocol server, canonicalizes what it
advertises (initialize info, instructions, tools, prompts, resources,
resource templates and custom message responses) and diffs the result
against a second probe of another build or another server.

Architecture:
    current tree  --build/start-->  server  --probe-->  snapshot --+
                                                                   |--> canonicalize --> diff
    compare ref   --worktree/build/start--> server --probe--> snapshot --+
"""

__version__ = "2.1.1"
