"""Allow ``python -m mcp_server_diff``."""

from .cli import main

main()
