"""Capability snapshot of one server instance."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .canonical import canonicalize, to_section_text

# Section names in persisted order.  Custom message responses follow as
# ``custom_<name>``.
SECTION_NAMES = (
    "initialize",
    "instructions",
    "tools",
    "prompts",
    "resources",
    "resource_templates",
)

CUSTOM_PREFIX = "custom_"


@dataclass(frozen=True, slots=True)
class PrimitiveCounts:
    """Number of MCP primitives advertised by a server."""

    tools: int = 0
    prompts: int = 0
    resources: int = 0
    resource_templates: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "tools": self.tools,
            "prompts": self.prompts,
            "resources": self.resources,
            "resourceTemplates": self.resource_templates,
        }


@dataclass(frozen=True)
class CapabilitySnapshot:
    """Everything a client can observe on one server at one point in time.

    Each section is either a JSON-compatible value or ``None`` when the
    server does not support or implement it.  A snapshot with ``error`` set
    carries no sections at all.

    Attributes:
        initialize: ``{"serverInfo": ..., "capabilities": ...}``.
        instructions: Server instructions text.
        tools: ``tools/list`` result.
        prompts: ``prompts/list`` result.
        resources: ``resources/list`` result.
        resource_templates: ``resources/templates/list`` result.
        custom_responses: Custom message name -> response.
        error: Connection/handshake failure description.
    """

    initialize: dict[str, Any] | None = None
    instructions: str | None = None
    tools: dict[str, Any] | None = None
    prompts: dict[str, Any] | None = None
    resources: dict[str, Any] | None = None
    resource_templates: dict[str, Any] | None = None
    custom_responses: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def failed(cls, error: str) -> CapabilitySnapshot:
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def sections(self) -> dict[str, Any]:
        """Return present sections as canonical values keyed by section name."""
        present: dict[str, Any] = {}
        for name in SECTION_NAMES:
            value = getattr(self, name)
            # Empty instructions are the same as none.
            if value is None or value == "":
                continue
            present[name] = canonicalize(value)
        for name, response in self.custom_responses.items():
            present[f"{CUSTOM_PREFIX}{name}"] = canonicalize(response)
        return present

    def to_files(self) -> dict[str, str]:
        """Return the persisted section blobs (section name -> text).

        Instructions are stored as their raw text; every other section as
        pretty-printed canonical JSON.
        """
        files: dict[str, str] = {}
        for name, value in self.sections().items():
            if name == "instructions":
                files[name] = value
            else:
                files[name] = to_section_text(value)
        return files


def extract_counts(snapshot: CapabilitySnapshot) -> PrimitiveCounts:
    """Count tools, prompts, resources and resource templates in a snapshot."""

    def _count(section: dict[str, Any] | None, key: str) -> int:
        if not section:
            return 0
        return len(section.get(key) or [])

    return PrimitiveCounts(
        tools=_count(snapshot.tools, "tools"),
        prompts=_count(snapshot.prompts, "prompts"),
        resources=_count(snapshot.resources, "resources"),
        resource_templates=_count(snapshot.resource_templates, "resourceTemplates"),
    )
