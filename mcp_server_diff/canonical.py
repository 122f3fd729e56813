"""Canonical form for JSON-like values.

Two snapshots of the same server can list the same tools in a different
order, emit object keys in a different order, or embed JSON documents
inside ``text`` content fields.  Canonicalization removes all of that
noise so that equal interfaces serialize to identical bytes:

    - mapping keys are emitted in ascending ordinal order
    - lists are ordered by the identity key of each element (stable)
    - ``text`` fields holding a JSON document are parsed, canonicalized
      and re-serialized in compact form

The identity key is also what the diff engine uses to match list
elements between two snapshots.
"""

from __future__ import annotations

import json
from typing import Any

# Identity fields probed in priority order.  Tools, prompts and arguments
# carry a name, resources a uri, resource templates a uriTemplate, content
# items a type, and request-shaped records a method.
IDENTITY_FIELDS = ("name", "uri", "uriTemplate", "type", "method")

# Field whose string value may hold an embedded JSON document.
EMBEDDED_JSON_FIELD = "text"


def canonical_json(value: Any) -> str:
    """Serialize a value compactly with sorted keys (no whitespace)."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def identity_key(value: Any) -> str:
    """Return the string used to order and match a list element.

    Records use the first string-valued identity field, falling back to
    the canonical serialization of the whole record.  Everything else
    uses its own string form, so the function is total.
    """
    if value is None:
        return ""
    if isinstance(value, dict):
        for field_name in IDENTITY_FIELDS:
            candidate = value.get(field_name)
            if isinstance(candidate, str):
                return candidate
        return canonical_json(canonicalize(value))
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return canonical_json(canonicalize(value))
    # bool, int, float: JSON spelling ("true", "1", "2.5").
    return json.dumps(value)


def canonicalize(value: Any) -> Any:
    """Return the canonical form of a JSON-compatible value.

    Idempotent: ``canonicalize(canonicalize(v)) == canonicalize(v)``.
    Tuples are treated as lists.
    """
    if isinstance(value, dict):
        result = {}
        for key in sorted(value):
            item = value[key]
            if key == EMBEDDED_JSON_FIELD and isinstance(item, str):
                item = _normalize_embedded_json(item)
            result[key] = canonicalize(item)
        return result

    if isinstance(value, (list, tuple)):
        items = [canonicalize(item) for item in value]
        # sorted() is stable, so equal keys keep their encounter order.
        return sorted(items, key=identity_key)

    return value


def _normalize_embedded_json(text: str) -> str:
    """Canonicalize a JSON document smuggled inside a string.

    Strings that do not look like a JSON object/array, or fail to parse,
    are returned untouched.
    """
    stripped = text.strip()
    if not stripped.startswith(("{", "[")):
        return text
    try:
        parsed = json.loads(text)
    except ValueError:
        return text
    return canonical_json(canonicalize(parsed))


def to_section_text(value: Any) -> str:
    """Render a canonical value as the persisted section blob.

    Pretty-printed with two-space indentation so that stored snapshots are
    readable in review; byte-identical for equal canonical values.
    """
    return json.dumps(canonicalize(value), indent=2, ensure_ascii=False)
