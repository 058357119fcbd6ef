"""Field-level record merging shared by migration and conflict resolution."""

from __future__ import annotations

import copy
from typing import Any, Dict, Iterable, List, Mapping

from services.schemas import is_blank


def _hashable(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool)) or value is None


def union_lists(base: Iterable[Any], extra: Iterable[Any]) -> List[Any]:
    """Ordered, de-duplicated union of two lists of scalars."""
    merged: List[Any] = []
    seen = set()
    for value in list(base) + list(extra):
        if value in seen:
            continue
        seen.add(value)
        merged.append(value)
    return merged


def merge_records(base: Mapping[str, Any], other: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``other`` into ``base`` without ever overriding a base value.

    ``base`` wins field by field.  A value from ``other`` is only used where the
    base field is missing or blank (``None``, empty string, empty container).
    ``False`` and ``0`` are real values.  Lists of scalars are merged as an
    ordered set union and nested mappings are merged recursively.
    """
    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, incoming in other.items():
        if key not in merged or is_blank(merged[key]):
            if not is_blank(incoming) or key not in merged:
                merged[key] = copy.deepcopy(incoming)
            continue
        current = merged[key]
        if isinstance(current, list) and isinstance(incoming, list):
            if all(_hashable(item) for item in current + incoming):
                merged[key] = union_lists(current, incoming)
        elif isinstance(current, Mapping) and isinstance(incoming, Mapping):
            merged[key] = merge_records(current, incoming)
    return merged


def is_converged(base: Mapping[str, Any], other: Mapping[str, Any]) -> bool:
    """True when merging ``other`` into ``base`` would not change ``base``."""
    return merge_records(base, other) == dict(base)


__all__ = ["is_converged", "merge_records", "union_lists"]
