"""Layered config merging: system < user < project < environment.

Mappings merge key by key and scalars and most lists are replaced by the
more specific layer. Permission lists are the exception: shell rules are
matched first-wins, so a project's rules are placed ahead of the user's
instead of hiding them, and auto-approved tool names accumulate.
"""

from __future__ import annotations

from typing import Any

# Key paths whose lists combine across layers; the later layer comes first
STACKED_LISTS = {("sandbox", "shell_permissions")}
# Key paths whose lists are unioned, keeping first appearance order
UNION_LISTS = {("sandbox", "auto_approve_tools")}


def _combine_lists(path: tuple[str, ...], base: list[Any], override: list[Any]) -> list[Any]:
    if path in STACKED_LISTS:
        return [*override, *base]
    if path in UNION_LISTS:
        merged: list[Any] = []
        for item in [*base, *override]:
            if item not in merged:
                merged.append(item)
        return merged
    return list(override)


def deep_merge(
    base: dict[str, Any], override: dict[str, Any], _path: tuple[str, ...] = ()
) -> dict[str, Any]:
    """Merge ``override`` onto ``base`` and return a new dict.

    A ``None`` in ``override`` keeps the base value, so a partial layer can
    leave settings alone. Neither input is modified.
    """
    merged = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        path = (*_path, key)
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value, path)
        elif isinstance(current, list) and isinstance(value, list):
            merged[key] = _combine_lists(path, current, value)
        else:
            merged[key] = value
    return merged


def merge_configs(*layers: dict[str, Any]) -> dict[str, Any]:
    """Merge layers from least to most specific; empty layers are skipped."""
    merged: dict[str, Any] = {}
    for layer in layers:
        if layer:
            merged = deep_merge(merged, layer)
    return merged
