from __future__ import annotations

from dataclasses import dataclass

import pytest

from tableplan_py.conditions import QueryCondition
from tableplan_py.merge import merge, sort_by


@dataclass(frozen=True)
class Row:
    id: str
    age: int | None
    name: str = ""


def _key(row: Row) -> tuple[str]:
    return (row.id,)


def test_merge_concatenates_filters_and_dedupes_first_wins() -> None:
    chunks = [
        [Row("a", 40, "first"), Row("b", 20)],
        [Row("a", 41, "second"), Row("c", 50)],
        [],
    ]
    out = merge(chunks, [QueryCondition.gt("age", 30)], key_of=_key)

    assert sorted(r.id for r in out) == ["a", "c"]
    assert next(r for r in out if r.id == "a").name == "first"


def test_merge_without_residuals_only_dedupes() -> None:
    out = merge([[Row("a", 1)], [Row("a", 2)], [Row("b", None)]], [], key_of=_key)
    assert [r.id for r in out] == ["a", "b"]


def test_merge_drops_missing_values_and_accepts_mappings() -> None:
    rows = [[{"id": "a", "age": None}, {"id": "b", "age": 31}, {"id": "c"}]]
    out = merge(rows, [QueryCondition.gte("age", 30)], key_of=lambda r: r["id"])
    assert out == [{"id": "b", "age": 31}]


def test_sort_by_orders_and_puts_none_last() -> None:
    rows = [Row("b", 2), Row("a", None), Row("c", 1), Row("a", 0)]
    assert sort_by(rows, "age") == [Row("a", 0), Row("c", 1), Row("b", 2), Row("a", None)]
    assert sort_by(rows, "id", "age") == [Row("a", 0), Row("a", None), Row("b", 2), Row("c", 1)]

    with pytest.raises(ValueError, match="at least one field"):
        sort_by(rows)
