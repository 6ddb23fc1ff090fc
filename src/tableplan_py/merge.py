from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable, Mapping, Sequence
from typing import Any

from .conditions import QueryCondition, matches_all


def _field_getter(record: Any) -> Callable[[str], Any]:
    if isinstance(record, Mapping):
        return record.get
    return lambda name: getattr(record, name, None)


def merge[T](
    raw_chunks: Iterable[Iterable[T]],
    residual_conditions: Sequence[QueryCondition],
    *,
    key_of: Callable[[T], Hashable],
) -> list[T]:
    """Concatenate chunk results, drop records failing a residual condition, dedupe by key.

    The first record seen for a key wins. Output order follows chunk arrival
    and carries no ordering guarantee.
    """
    seen: set[Hashable] = set()
    out: list[T] = []
    for chunk in raw_chunks:
        for record in chunk:
            if residual_conditions and not matches_all(residual_conditions, _field_getter(record)):
                continue
            key = key_of(record)
            if key in seen:
                continue
            seen.add(key)
            out.append(record)
    return out


def _sort_value(value: Any) -> tuple[bool, Any]:
    # None sorts last.
    return (value is None, value)


def sort_by[T](records: Iterable[T], *fields: str) -> list[T]:
    if not fields:
        raise ValueError("sort_by requires at least one field")

    def key(record: T) -> tuple[tuple[bool, Any], ...]:
        get = _field_getter(record)
        return tuple(_sort_value(get(name)) for name in fields)

    return sorted(records, key=key)
