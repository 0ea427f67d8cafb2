"""Helpers for reading and rendering execution context values."""

from __future__ import annotations

import re
from typing import Any, Mapping

_MERGE_TAG = re.compile(r"\{\{\s*([\w\.]+)\s*\}\}")


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Return the value at a dot-separated ``path`` inside nested mappings/lists.

    >>> get_path({"customer": {"name": "Ann"}}, "customer.name")
    'Ann'
    >>> get_path({"items": [{"sku": "A1"}]}, "items.0.sku")
    'A1'
    """
    if data is None or not path:
        return default

    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return default
            current = current[index]
        else:
            return default
    return current


def render_merge_tags(value: Any, context: Mapping[str, Any]) -> Any:
    """Replace ``{{dotted.path}}`` tags in strings with context values.

    Non-string values are returned untouched; unknown tags render empty.
    """
    if not isinstance(value, str):
        return value

    def _replace(match: re.Match) -> str:
        found = get_path(context, match.group(1), "")
        return "" if found is None else str(found)

    return _MERGE_TAG.sub(_replace, value)
