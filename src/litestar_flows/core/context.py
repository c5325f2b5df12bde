"""Helpers for reading and updating the instance context bag."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

__all__ = ["MISSING", "merge_output", "resolve_path"]


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()
"""Sentinel returned by ``resolve_path`` for absent fields."""


def resolve_path(data: Mapping[str, Any], path: str, default: Any = MISSING) -> Any:
    """Resolve a dotted path (``"order.lines.0.sku"``) inside nested data.

    Args:
        data: Mapping to read from.
        path: Dot-separated keys; integer segments index into sequences.
        default: Returned when any segment is absent.

    Returns:
        The resolved value, or ``default``.

    Example:
        >>> resolve_path({"order": {"lines": [{"sku": "A-1"}]}}, "order.lines.0.sku")
        'A-1'
    """
    if not path:
        return default
    current: Any = data
    for segment in path.split("."):
        if isinstance(current, Mapping):
            if segment not in current:
                return default
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment.lstrip("-").isdigit():
            index = int(segment)
            if not -len(current) <= index < len(current):
                return default
            current = current[index]
        else:
            return default
    return current


def merge_output(context: dict[str, Any], output: Mapping[str, Any] | None) -> dict[str, Any]:
    """Return a new context with ``output`` merged over it (shallow, last write wins)."""
    merged = dict(context)
    if output:
        merged.update(output)
    return merged
