"""Configuration models and input parsers.

Inputs arrive as strings, either from command-line options or from
GitHub Actions ``INPUT_*`` environment variables.  The parsers here turn
them into validated pydantic models and plain mappings.  None of them
touch ``os.environ``.
"""

from __future__ import annotations

import json
import logging
import shlex
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

# --- Defaults ---

DEFAULT_SERVER_TIMEOUT = 30.0  # seconds
DEFAULT_STARTUP_WAIT_MS = 2000
DEFAULT_GRACE_PERIOD = 5.0  # seconds


class ConfigError(Exception):
    """Raised when a configuration file or input is invalid."""


class Transport(str, Enum):
    STDIO = "stdio"
    STREAMABLE_HTTP = "streamable-http"


class CustomMessage(BaseModel):
    """A raw JSON-RPC request sent after the standard listings.

    ``message`` holds ``method`` and optional ``params``; responses are
    stored in the snapshot under ``name``.
    """

    id: int = 0
    name: str
    message: dict[str, Any]

    @field_validator("message")
    @classmethod
    def _requires_method(cls, value: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(value.get("method"), str):
            raise ValueError("custom message requires a string 'method'")
        return value


class TestConfiguration(BaseModel):
    """One named probing scenario."""

    __test__ = False  # not a pytest class

    model_config = ConfigDict(extra="ignore")

    name: str
    transport: Transport = Transport.STDIO
    start_command: str | None = None
    args: str | None = None
    server_url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    env_vars: str | None = None
    custom_messages: list[CustomMessage] | None = None
    pre_test_command: str | None = None
    pre_test_wait_ms: int | None = None
    startup_wait_ms: int | None = None
    post_test_command: str | None = None
    base_start_command: str | None = None
    base_server_url: str | None = None

    @property
    def is_http(self) -> bool:
        return self.transport is Transport.STREAMABLE_HTTP

    def command_argv(self) -> list[str]:
        """Split ``start_command`` plus ``args`` into an argv list."""
        argv = shlex.split(self.start_command or "")
        if self.args:
            argv.extend(shlex.split(self.args))
        return argv

    def for_external_base(self) -> TestConfiguration:
        """Return the configuration used to probe an external base server."""
        return self.model_copy(
            update={
                "start_command": self.base_start_command,
                "server_url": self.base_server_url or self.server_url,
            }
        )


class ServerConfig(BaseModel):
    """A server to probe in server-vs-server mode."""

    name: str
    transport: Transport = Transport.STDIO
    start_command: str | None = None
    server_url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    env_vars: dict[str, str] = Field(default_factory=dict)


class DiffConfig(BaseModel):
    """A base server and the targets compared against it."""

    base: ServerConfig
    targets: list[ServerConfig] = Field(min_length=1)


# --- Parsers ---


def _default_configuration(
    transport: Transport, command: str, url: str
) -> TestConfiguration:
    return TestConfiguration(
        name="default",
        transport=transport,
        start_command=command if transport is Transport.STDIO else None,
        server_url=url if transport is Transport.STREAMABLE_HTTP else None,
    )


def parse_configurations(
    text: str | None,
    default_transport: Transport,
    default_command: str,
    default_url: str,
) -> list[TestConfiguration]:
    """Parse the ``configurations`` input.

    Empty input yields a single ``default`` configuration.  Entries without
    a transport inherit ``default_transport``; stdio entries without a
    command inherit ``default_command``; HTTP entries without a URL inherit
    ``default_url``.  Invalid input falls back to the default configuration.
    """
    if not text or text.strip() in ("", "[]"):
        return [_default_configuration(default_transport, default_command, default_url)]

    try:
        raw = json.loads(text)
        if not isinstance(raw, list) or not raw:
            raise ValueError("configurations must be a non-empty array")
        configs = []
        for entry in raw:
            entry = dict(entry)
            entry.setdefault("transport", default_transport.value)
            config = TestConfiguration.model_validate(entry)
            if config.transport is Transport.STDIO and not config.start_command:
                config = config.model_copy(update={"start_command": default_command})
            if config.is_http and not config.server_url:
                config = config.model_copy(update={"server_url": default_url})
            configs.append(config)
        return configs
    except (ValueError, TypeError, ValidationError) as exc:
        logger.warning("Failed to parse configurations: %s", exc)
        return [_default_configuration(default_transport, default_command, default_url)]


def parse_custom_messages(text: str | None) -> list[CustomMessage]:
    """Parse the ``custom_messages`` input; invalid input yields ``[]``."""
    if not text or text.strip() in ("", "[]"):
        return []
    try:
        raw = json.loads(text)
    except ValueError:
        logger.warning("Ignoring custom messages: not valid JSON")
        return []
    if not isinstance(raw, list):
        return []
    try:
        return [CustomMessage.model_validate(item) for item in raw]
    except ValidationError as exc:
        logger.warning("Ignoring custom messages: %s", exc)
        return []


def parse_headers(text: str | None) -> dict[str, str]:
    """Parse headers from a JSON object or ``Name: value`` / ``Name=value`` lines."""
    if not text or text.strip() in ("", "{}"):
        return {}

    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        return {str(k): str(v) for k, v in parsed.items()}

    headers: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        colon = stripped.find(":")
        sep = colon if colon > 0 else stripped.find("=")
        if sep > 0:
            headers[stripped[:sep].strip()] = stripped[sep + 1 :].strip()
    return headers


def parse_env_vars(text: str | None) -> dict[str, str]:
    """Parse ``KEY=value`` lines; the value is everything after the first ``=``."""
    env: dict[str, str] = {}
    if not text:
        return env
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if sep and key:
            env[key] = value
    return env


def merge_env(base: Mapping[str, str], overrides: Mapping[str, str]) -> dict[str, str]:
    """Return a new environment: ``base`` with ``overrides`` applied on top."""
    merged = dict(base)
    merged.update(overrides)
    return merged


def command_to_config(command: str, name: str) -> ServerConfig:
    """Build a server config from a command line or an HTTP(S) URL."""
    if command.startswith(("http://", "https://")):
        return ServerConfig(name=name, transport=Transport.STREAMABLE_HTTP, server_url=command)
    return ServerConfig(name=name, transport=Transport.STDIO, start_command=command)


def load_diff_config(path: str | Path) -> DiffConfig:
    """Load a server-vs-server config file.

    Raises:
        ConfigError: If the file is unreadable, not JSON, or lacks a base or
            at least one target.
    """
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Cannot read config {path}: {exc}") from exc
    if not isinstance(raw, dict) or "base" not in raw:
        raise ConfigError("Config must have a 'base' server")
    if not raw.get("targets"):
        raise ConfigError("Config must have at least one 'target' server")
    try:
        return DiffConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config {path}: {exc}") from exc
