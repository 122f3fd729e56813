"""Collect a capability snapshot from an MCP server.

The probe connects once over stdio or streamable HTTP using the official
MCP Python SDK client, reads the server's declared capabilities from the
``initialize`` handshake, and issues only the list calls those
capabilities advertise::

    initialize            -> serverInfo, capabilities, instructions
    tools/list            (if capabilities.tools)
    prompts/list          (if capabilities.prompts)
    resources/list        (if capabilities.resources)
    resources/templates/list (if capabilities.resources)
    <custom messages>     (in order, after the standard listings)

A failure to connect or complete the handshake produces a snapshot that
carries only an error.  A failing list call only leaves its section out.
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable

from mcp import ClientSession, McpError, StdioServerParameters, types
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from .config import DEFAULT_SERVER_TIMEOUT, CustomMessage, Transport
from .snapshot import CapabilitySnapshot

logger = logging.getLogger(__name__)

CLIENT_INFO = types.Implementation(name="mcp-server-diff-probe", version="2.0.0")


@dataclass(frozen=True)
class ProbeOptions:
    """Transport parameters for one probe.

    ``command``/``args``/``cwd``/``env`` apply to stdio; ``url``/``headers``
    to streamable HTTP.  ``env`` is the complete environment of the child.
    """

    transport: Transport
    command: str | None = None
    args: list[str] = field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] | None = None
    url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    custom_messages: list[CustomMessage] = field(default_factory=list)
    timeout: float = DEFAULT_SERVER_TIMEOUT


def is_method_not_found(exc: BaseException) -> bool:
    """True if ``exc`` is a JSON-RPC "Method not found" (-32601) error."""
    if isinstance(exc, McpError) and exc.error.code == types.METHOD_NOT_FOUND:
        return True
    text = str(exc)
    return "-32601" in text or "Method not found" in text


def describe_error(exc: BaseException) -> str:
    """Human-readable text for an exception, unwrapping exception groups."""
    while isinstance(getattr(exc, "exceptions", None), (list, tuple)) and exc.exceptions:
        exc = exc.exceptions[0]
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def _dump(model: Any) -> dict[str, Any]:
    return model.model_dump(by_alias=True, mode="json", exclude_none=True)


async def _open_session(stack: AsyncExitStack, options: ProbeOptions) -> ClientSession:
    if options.transport is Transport.STDIO:
        if not options.command:
            raise ValueError("Command is required for stdio transport")
        logger.info("  Connecting via stdio: %s %s", options.command, " ".join(options.args))
        params = StdioServerParameters(
            command=options.command,
            args=list(options.args),
            env=options.env,
            cwd=options.cwd,
        )
        read_stream, write_stream = await stack.enter_async_context(stdio_client(params))
    else:
        if not options.url:
            raise ValueError("URL is required for streamable-http transport")
        logger.info("  Connecting via streamable-http: %s", options.url)
        if options.headers:
            logger.info("  With headers: %s", ", ".join(options.headers))
        read_stream, write_stream, _ = await stack.enter_async_context(
            streamablehttp_client(
                options.url,
                headers=options.headers or None,
                timeout=timedelta(seconds=options.timeout),
            )
        )

    return await stack.enter_async_context(
        ClientSession(
            read_stream,
            write_stream,
            read_timeout_seconds=timedelta(seconds=options.timeout),
            client_info=CLIENT_INFO,
        )
    )


async def _list_section(
    label: str,
    call: Callable[[], Awaitable[Any]],
    items_key: str,
) -> dict[str, Any] | None:
    """Run one list call; return its dumped result or ``None`` on failure."""
    try:
        result = _dump(await call())
    except Exception as exc:
        if is_method_not_found(exc):
            logger.info("  Server does not implement %s", label)
        else:
            logger.warning("  Failed to list %s: %s", label, describe_error(exc))
        return None
    logger.info("  Listed %d %s", len(result.get(items_key, [])), items_key)
    return result


async def _send_custom(session: ClientSession, message: CustomMessage) -> dict[str, Any] | None:
    request = types.Request[dict[str, Any] | None, str](
        method=message.message["method"],
        params=message.message.get("params"),
    )
    try:
        response = await session.send_request(request, types.Result)  # type: ignore[arg-type]
    except Exception as exc:
        logger.warning("  Custom message '%s' failed: %s", message.name, describe_error(exc))
        return None
    logger.info("  Custom message '%s' successful", message.name)
    return _dump(response)


async def _collect(session: ClientSession, options: ProbeOptions) -> CapabilitySnapshot:
    init = await session.initialize()
    logger.info("  Connected successfully")

    capabilities = init.capabilities
    initialize = {
        "serverInfo": _dump(init.serverInfo),
        "capabilities": _dump(capabilities),
    }

    instructions = init.instructions or None
    if instructions:
        logger.info("  Got server instructions (%d chars)", len(instructions))

    tools = prompts = resources = templates = None

    if capabilities.tools is not None:
        tools = await _list_section("tools/list", session.list_tools, "tools")
    else:
        logger.info("  Server does not support tools")

    if capabilities.prompts is not None:
        prompts = await _list_section("prompts/list", session.list_prompts, "prompts")
    else:
        logger.info("  Server does not support prompts")

    if capabilities.resources is not None:
        resources = await _list_section("resources/list", session.list_resources, "resources")
        # Some servers support resources but not templates.
        templates = await _list_section(
            "resources/templates/list", session.list_resource_templates, "resourceTemplates"
        )
    else:
        logger.info("  Server does not support resources")

    custom_responses: dict[str, Any] = {}
    for message in options.custom_messages:
        response = await _send_custom(session, message)
        if response is not None:
            custom_responses[message.name] = response

    logger.info("  Probe complete")
    return CapabilitySnapshot(
        initialize=initialize,
        instructions=instructions,
        tools=tools,
        prompts=prompts,
        resources=resources,
        resource_templates=templates,
        custom_responses=custom_responses,
    )


async def probe_server(options: ProbeOptions) -> CapabilitySnapshot:
    """Probe one server and return its capability snapshot.

    Never raises for server-side problems: connection and handshake
    failures are returned as ``CapabilitySnapshot(error=...)``.  The
    connection is closed on every path by the exit stack.
    """
    try:
        async with AsyncExitStack() as stack:
            session = await _open_session(stack, options)
            return await _collect(session, options)
    except Exception as exc:
        error = describe_error(exc)
        logger.error("  Error probing server: %s", error)
        return CapabilitySnapshot.failed(error)
