"""Structural diff over canonical values.

The diff walks two canonical values in parallel and reports every
difference as a path-addressed entry::

    tools[search].inputSchema.properties.limit.type

Lists are never compared by position.  Each element is matched to its
counterpart on the other side by identity key (see :mod:`.canonical`), so
inserting a tool at the front of a list reports one added tool instead of
a cascade of changes.

Rendered values in entries are truncated for reporting; they never feed
back into the comparison itself.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .canonical import canonicalize, identity_key

# Root label used when a difference sits at the top of a value.
ROOT_PATH = "root"


class ChangeKind(str, Enum):
    """Kind of a single difference."""

    ADDED = "added"
    REMOVED = "removed"
    CHANGED = "changed"


_MARKERS = {
    ChangeKind.ADDED: "+",
    ChangeKind.REMOVED: "-",
    ChangeKind.CHANGED: "~",
}


@dataclass(frozen=True, slots=True)
class RenderLimits:
    """Truncation thresholds for rendered values.

    Attributes:
        max_string: Longest string rendered before an ellipsis is appended.
        max_object: Longest serialized list/mapping rendered before truncation.
    """

    max_string: int = 100
    max_object: int = 200


DEFAULT_LIMITS = RenderLimits()


@dataclass(frozen=True, slots=True)
class DiffEntry:
    """One structural difference between base and branch.

    Attributes:
        path: Dot/bracket path of the difference (e.g. ``tools[add].name``).
        kind: Added, removed, or changed.
        old: Rendered base value (``None`` for additions).
        new: Rendered branch value (``None`` for removals).
    """

    path: str
    kind: ChangeKind
    old: str | None = None
    new: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "kind": self.kind.value, "old": self.old, "new": self.new}

    def format(self) -> str:
        """Render as a single unified-diff style line."""
        marker = _MARKERS[self.kind]
        if self.kind is ChangeKind.ADDED:
            return f"{marker} {self.path}: {self.new}"
        if self.kind is ChangeKind.REMOVED:
            return f"{marker} {self.path}: {self.old}"
        return f"{marker} {self.path}: {self.old} -> {self.new}"


def render_value(value: Any, limits: RenderLimits = DEFAULT_LIMITS) -> str:
    """Render a value for a human-readable report, truncating long values."""
    if value is None:
        return "null"
    if isinstance(value, str):
        if len(value) > limits.max_string:
            return json.dumps(value[: limits.max_string] + "...", ensure_ascii=False)
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, (dict, list, tuple)):
        text = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        if len(text) > limits.max_object:
            return text[: limits.max_object] + "..."
        return text
    return json.dumps(value)


def _kind_of(value: Any) -> str:
    # bool is a subclass of int; keep them apart.
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _keyed(items: list[Any]) -> dict[tuple[str, int], Any]:
    """Index list elements by ``(identity key, occurrence)``.

    Canonical lists keep duplicates in encounter order, so the n-th
    occurrence of a key on one side pairs with the n-th on the other.
    """
    keyed: dict[tuple[str, int], Any] = {}
    seen: dict[str, int] = {}
    for item in items:
        key = identity_key(item)
        count = seen.get(key, 0) + 1
        seen[key] = count
        keyed[(key, count)] = item
    return keyed


def _element_path(path: str, slot: tuple[str, int]) -> str:
    key, occurrence = slot
    return f"{path}[{key}]" if occurrence == 1 else f"{path}[{key}#{occurrence}]"


def diff(
    base: Any,
    branch: Any,
    path: str = "",
    *,
    limits: RenderLimits = DEFAULT_LIMITS,
) -> list[DiffEntry]:
    """Compute the structural differences between two canonical values.

    Args:
        base: Canonical value from the comparison side.
        branch: Canonical value from the current side.
        path: Path prefix for emitted entries.
        limits: Truncation thresholds for rendered values.

    Returns:
        Ordered list of entries; empty iff the two values are equal.
    """
    here = path or ROOT_PATH

    if base is None and branch is None:
        return []
    if base is None:
        return [DiffEntry(here, ChangeKind.ADDED, new=render_value(branch, limits))]
    if branch is None:
        return [DiffEntry(here, ChangeKind.REMOVED, old=render_value(base, limits))]

    if _kind_of(base) != _kind_of(branch):
        return _replaced(here, base, branch, limits)

    if isinstance(base, (list, tuple)):
        return _diff_lists(list(base), list(branch), path, limits)

    if isinstance(base, dict):
        return _diff_mappings(base, branch, path, limits)

    if base != branch:
        return _replaced(here, base, branch, limits)
    return []


def _replaced(path: str, base: Any, branch: Any, limits: RenderLimits) -> list[DiffEntry]:
    return [
        DiffEntry(path, ChangeKind.REMOVED, old=render_value(base, limits)),
        DiffEntry(path, ChangeKind.ADDED, new=render_value(branch, limits)),
    ]


def _diff_lists(
    base: list[Any], branch: list[Any], path: str, limits: RenderLimits
) -> list[DiffEntry]:
    base_items = _keyed(base)
    branch_items = _keyed(branch)
    entries: list[DiffEntry] = []

    for slot, item in base_items.items():
        if slot not in branch_items:
            entries.append(
                DiffEntry(
                    _element_path(path, slot), ChangeKind.REMOVED, old=render_value(item, limits)
                )
            )

    for slot, item in branch_items.items():
        if slot not in base_items:
            entries.append(
                DiffEntry(
                    _element_path(path, slot), ChangeKind.ADDED, new=render_value(item, limits)
                )
            )

    for slot, item in base_items.items():
        if slot in branch_items:
            entries.extend(diff(item, branch_items[slot], _element_path(path, slot), limits=limits))

    return entries


def _diff_mappings(
    base: dict[str, Any], branch: dict[str, Any], path: str, limits: RenderLimits
) -> list[DiffEntry]:
    entries: list[DiffEntry] = []
    for key in sorted(set(base) | set(branch)):
        child = f"{path}.{key}" if path else key
        if key not in base:
            entries.append(DiffEntry(child, ChangeKind.ADDED, new=render_value(branch[key], limits)))
        elif key not in branch:
            entries.append(DiffEntry(child, ChangeKind.REMOVED, old=render_value(base[key], limits)))
        else:
            entries.extend(diff(base[key], branch[key], child, limits=limits))
    return entries


def compare_sections(
    base: dict[str, Any],
    branch: dict[str, Any],
    *,
    limits: RenderLimits = DEFAULT_LIMITS,
) -> dict[str, list[DiffEntry]]:
    """Diff two section maps (section name -> value) section by section.

    A section present on only one side is reported as a single entry for
    the whole section.  Sections without differences are omitted.
    """
    result: dict[str, list[DiffEntry]] = {}
    for name in sorted(set(base) | set(branch)):
        if name not in base:
            entries = [DiffEntry(name, ChangeKind.ADDED, new=render_value(branch[name], limits))]
        elif name not in branch:
            entries = [DiffEntry(name, ChangeKind.REMOVED, old=render_value(base[name], limits))]
        else:
            entries = diff(canonicalize(base[name]), canonicalize(branch[name]), limits=limits)
        if entries:
            result[name] = entries
    return result


def coalesce_changes(entries: list[DiffEntry]) -> list[DiffEntry]:
    """Merge each removed+added pair on the same path into one changed entry.

    Used for compact reports; the input list is left untouched.
    """
    merged: list[DiffEntry] = []
    i = 0
    while i < len(entries):
        current = entries[i]
        following = entries[i + 1] if i + 1 < len(entries) else None
        if (
            following is not None
            and current.kind is ChangeKind.REMOVED
            and following.kind is ChangeKind.ADDED
            and current.path == following.path
        ):
            merged.append(DiffEntry(current.path, ChangeKind.CHANGED, current.old, following.new))
            i += 2
            continue
        merged.append(current)
        i += 1
    return merged


def format_entries(name: str, entries: list[DiffEntry]) -> str:
    """Render one section's entries as a ``diff`` code-block body."""
    lines = [f"--- base/{name}.json", f"+++ branch/{name}.json", ""]
    lines.extend(entry.format() for entry in entries)
    return "\n".join(lines)
