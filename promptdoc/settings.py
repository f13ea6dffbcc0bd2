"""Model settings reconciliation: deep equality, minimal overrides and merge."""

from __future__ import annotations

import copy
from typing import Any, Dict, Mapping, Optional, Sequence


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


def deep_equal(first: Any, second: Any) -> bool:
    """Structural equality over JSON-like values.

    Mapping keys compare order-independently, sequences order-sensitively.
    Booleans never compare equal to numbers.
    """
    if first is second:
        return True
    if isinstance(first, bool) or isinstance(second, bool):
        return isinstance(first, bool) and isinstance(second, bool) and first == second
    if _is_sequence(first) and _is_sequence(second):
        if len(first) != len(second):
            return False
        return all(deep_equal(a, b) for a, b in zip(first, second))
    if isinstance(first, Mapping) and isinstance(second, Mapping):
        if set(first.keys()) != set(second.keys()):
            return False
        return all(deep_equal(first[key], second[key]) for key in first)
    if _is_sequence(first) or _is_sequence(second):
        return False
    if isinstance(first, Mapping) or isinstance(second, Mapping):
        return False
    return first == second


def diff_settings(
    global_settings: Optional[Mapping[str, Any]],
    requested: Optional[Mapping[str, Any]],
) -> Dict[str, Any]:
    """Return the minimal override set turning ``global_settings`` into ``requested``.

    A key present only in ``global_settings`` maps to ``None`` (explicitly cleared).
    """
    global_settings = global_settings or {}
    requested = requested or {}

    keys = list(global_settings.keys())
    keys.extend(key for key in requested.keys() if key not in global_settings)

    overrides: Dict[str, Any] = {}
    for key in keys:
        if not deep_equal(global_settings.get(key), requested.get(key)):
            overrides[key] = copy.deepcopy(requested.get(key))
    return overrides


def merge_settings(
    global_settings: Optional[Mapping[str, Any]],
    overrides: Optional[Mapping[str, Any]],
) -> Dict[str, Any]:
    """Layer ``overrides`` on top of ``global_settings``; a ``None`` override removes the key."""
    merged: Dict[str, Any] = copy.deepcopy(dict(global_settings or {}))
    for key, value in (overrides or {}).items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = copy.deepcopy(value)
    return merged
