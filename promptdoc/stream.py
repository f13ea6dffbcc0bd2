"""Streaming aggregation: fold per-choice partial deltas into whole messages."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from .errors import ProtocolError

StreamAccumulator = Dict[int, Dict[str, Any]]


def merge_delta(partial: Optional[Mapping[str, Any]], delta: Mapping[str, Any]) -> Dict[str, Any]:
    """Deep-merge one delta into a partial message and return the new message.

    Missing fields adopt the incoming value, strings concatenate, mappings
    merge recursively and any other combination is overwritten. ``None`` in
    the delta carries no update.
    """
    merged: Dict[str, Any] = dict(partial or {})
    for key, value in delta.items():
        if value is None:
            continue
        current = merged.get(key)
        if current is None:
            merged[key] = value
        elif isinstance(current, str) and isinstance(value, str):
            merged[key] = current + value
        elif isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_delta(current, value)
        else:
            merged[key] = value
    return merged


def fold(accumulator: Optional[StreamAccumulator], fragment: Mapping[str, Any]) -> StreamAccumulator:
    """Fold one streamed fragment ``{"choices": [{"index", "delta"}, ...]}``.

    The number of choices may not change once the accumulator holds any.
    """
    choices = fragment.get("choices") or []
    if accumulator is None:
        accumulator = {}
    elif accumulator and len(accumulator) != len(choices):
        raise ProtocolError(
            f"Invalid number of choices in stream fragment: expected {len(accumulator)}, got {len(choices)}"
        )

    for position, choice in enumerate(choices):
        index = choice.get("index")
        if index is None:
            index = position
        accumulator[index] = merge_delta(accumulator.get(index), choice.get("delta") or {})
    return accumulator
