"""Merge policy for incrementally-built trace logs.

Each incoming key is combined with the value already on the record:

- mapping + mapping: shallow union, new keys win
- list + list: concatenation (``tags`` drops duplicates, keeping order)
- ``error``: a second error accumulates into a list instead of overwriting
- ``status``: once ``error`` it stays ``error``
- anything else: the new value replaces the old one
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

# Assigned once at creation; never changed through insert.
LINKAGE_FIELDS: frozenset[str] = frozenset({
    "trace_id",
    "parent_trace_id",
    "root_trace_id",
    "depth",
    "execution_order",
    "children",
})


def _as_mapping(value: Any) -> dict[str, Any] | None:
    if isinstance(value, BaseModel):
        return value.model_dump(exclude_unset=True)
    if isinstance(value, Mapping):
        return dict(value)
    return None


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def merge_errors(existing: Any, new: Any) -> Any:
    if existing is None or existing == "" or existing == []:
        return new
    if new is None:
        return existing
    old_list = list(existing) if _is_sequence(existing) else [existing]
    new_list = list(new) if _is_sequence(new) else [new]
    return [str(e) for e in old_list + new_list]


def merge_values(key: str, existing: Any, new: Any) -> Any:
    """Combine ``new`` with the ``existing`` value of field ``key``."""
    if key == "error":
        return merge_errors(existing, new)
    if key == "status":
        return "error" if existing == "error" else new
    if existing is None:
        return new

    existing_map = _as_mapping(existing)
    new_map = _as_mapping(new)
    if existing_map is not None and new_map is not None:
        if isinstance(existing, BaseModel):
            return type(existing).model_validate({**existing.model_dump(), **new_map})
        return {**existing_map, **new_map}

    if _is_sequence(existing) and _is_sequence(new):
        combined = list(existing) + list(new)
        if key == "tags":
            return list(dict.fromkeys(combined))
        return combined

    return new


def merge_trace_data(record: BaseModel, data: Mapping[str, Any]) -> None:
    """Merge ``data`` into ``record`` in place.

    Never raises: invalid values and attempts to rewrite linkage fields are
    logged and skipped.
    """
    for key, value in data.items():
        if key in LINKAGE_FIELDS:
            logger.warning("Ignoring insert of %r: trace linkage fields are fixed at creation.", key)
            continue
        existing = getattr(record, key, None)
        try:
            setattr(record, key, merge_values(key, existing, value))
        except (ValidationError, TypeError, ValueError) as exc:
            logger.warning("Could not merge %r into trace %s: %s", key, getattr(record, "trace_id", "?"), exc)
