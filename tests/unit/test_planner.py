from __future__ import annotations

from dataclasses import dataclass

import pytest

from tableplan_py import (
    PRIMARY_KEY,
    AmbiguousIndexError,
    InvalidIndexHintError,
    ModelDefinition,
    QueryCondition,
    SchemaDescriptor,
    UnsupportedConditionError,
    ValidationError,
    gsi,
    lsi,
    plan_query,
    tableplan_field,
)


@dataclass(frozen=True)
class Person:
    id: str = tableplan_field(roles=["pk"])
    email: str = tableplan_field()
    first_name: str = tableplan_field()
    age: int = tableplan_field()


@dataclass(frozen=True)
class Post:
    author: str = tableplan_field(roles=["pk"])
    slug: str = tableplan_field(roles=["sk"])
    published: str = tableplan_field()
    score: int = tableplan_field(default=0)


def _people() -> SchemaDescriptor:
    model = ModelDefinition.from_dataclass(
        Person,
        table_name="people",
        indexes=[
            gsi("by-email", partition="email"),
            gsi("by-first-name", partition="first_name"),
            gsi("by-age", partition="age"),
        ],
    )
    return SchemaDescriptor.from_model(model)


def _posts() -> SchemaDescriptor:
    model = ModelDefinition.from_dataclass(
        Post,
        table_name="posts",
        indexes=[lsi("by-published", sort="published")],
    )
    return SchemaDescriptor.from_model(model)


def test_primary_hash_eq_on_single_key_is_get_item() -> None:
    plan = plan_query(_people(), [QueryCondition.eq("id", "u1")])
    assert plan.operation == "get_item"
    assert plan.index_name is None
    assert plan.index_type == "TABLE"
    assert plan.hash_values == ("u1",)
    assert plan.residual_conditions == ()


def test_primary_hash_in_is_batch_get_with_deduped_values() -> None:
    plan = plan_query(_people(), [QueryCondition.in_("id", ["a", "b", "a"])])
    assert plan.operation == "batch_get_item"
    assert plan.hash_values == ("a", "b")
    assert any("batched gets" in h for h in plan.optimization_hints)


def test_secondary_index_with_residual_filter() -> None:
    plan = plan_query(
        _people(),
        [QueryCondition.in_("email", ["e1", "e2"]), QueryCondition.gt("age", 30)],
    )
    assert plan.operation == "query"
    assert plan.index_name == "by-email"
    assert plan.index_type == "GSI"
    assert plan.hash_attribute == "email"
    assert plan.residual_conditions == (QueryCondition.gt("age", 30),)
    assert any("2 queries" in h for h in plan.optimization_hints)


def test_two_covering_indexes_are_ambiguous_without_hint() -> None:
    conds = [QueryCondition.eq("first_name", "Ann"), QueryCondition.eq("age", 40)]
    with pytest.raises(AmbiguousIndexError) as excinfo:
        plan_query(_people(), conds)
    assert excinfo.value.candidates == ("by-age", "by-first-name")


@pytest.mark.parametrize("hint", ["by-first-name", "by-age"])
def test_hint_resolves_ambiguity_deterministically(hint: str) -> None:
    conds = [QueryCondition.eq("first_name", "Ann"), QueryCondition.eq("age", 40)]
    first = plan_query(_people(), conds, hint)
    second = plan_query(_people(), conds, hint)

    assert first == second
    assert first.index_name == hint
    assert first.operation == "query"
    assert len(first.residual_conditions) == 1


def test_primary_key_candidate_listed_as_primary_marker() -> None:
    conds = [QueryCondition.eq("id", "u1"), QueryCondition.eq("email", "e1")]
    with pytest.raises(AmbiguousIndexError) as excinfo:
        plan_query(_people(), conds)
    assert excinfo.value.candidates == (PRIMARY_KEY, "by-email")

    plan = plan_query(_people(), conds, PRIMARY_KEY)
    assert plan.operation == "get_item"
    assert plan.residual_conditions == (QueryCondition.eq("email", "e1"),)


def test_invalid_hints() -> None:
    with pytest.raises(InvalidIndexHintError, match="no such index"):
        plan_query(_people(), [QueryCondition.eq("email", "e1")], "by-nothing")

    with pytest.raises(InvalidIndexHintError, match="hash attribute"):
        plan_query(_people(), [QueryCondition.eq("email", "e1")], "by-age")


def test_no_candidate_falls_back_to_scan(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level("WARNING", logger="tableplan_py.planner"):
        plan = plan_query(_people(), [QueryCondition.gt("age", 30)])

    assert plan.operation == "scan"
    assert plan.index_name is None
    assert plan.key_conditions == ()
    assert plan.residual_conditions == (QueryCondition.gt("age", 30),)
    assert plan.optimization_hints[0].startswith("WARNING: Scan")
    assert "falling back to scan" in caplog.text


def test_empty_in_short_circuits() -> None:
    plan = plan_query(_people(), [QueryCondition.in_("id", [])])
    assert plan.operation == "empty"


def test_composite_key_operations() -> None:
    posts = _posts()

    assert plan_query(posts, [QueryCondition.eq("author", "a")]).operation == "query"
    assert (
        plan_query(posts, [QueryCondition.eq("author", "a"), QueryCondition.eq("slug", "s")]).operation
        == "get_item"
    )
    batch = plan_query(posts, [QueryCondition.in_("author", ["a", "b"]), QueryCondition.in_("slug", ["x", "y"])])
    assert batch.operation == "batch_get_item"
    assert any("4 keys" in h for h in batch.optimization_hints)

    ranged = plan_query(posts, [QueryCondition.eq("author", "a"), QueryCondition.begins_with("slug", "2024-")])
    assert ranged.operation == "query"
    assert ranged.range_condition == QueryCondition.begins_with("slug", "2024-")
    assert ranged.residual_conditions == ()


def test_lsi_only_qualifies_with_a_range_condition() -> None:
    posts = _posts()
    conds = [QueryCondition.eq("author", "a"), QueryCondition.gt("published", "2024")]
    with pytest.raises(AmbiguousIndexError):
        plan_query(posts, conds)

    plan = plan_query(posts, conds, "by-published")
    assert plan.index_type == "LSI"
    assert plan.range_condition == QueryCondition.gt("published", "2024")
    assert plan.residual_conditions == ()

    only_hash = plan_query(posts, [QueryCondition.eq("author", "a"), QueryCondition.eq("score", 3)])
    assert only_hash.index_name is None


def test_only_first_range_condition_is_folded() -> None:
    plan = plan_query(
        _posts(),
        [QueryCondition.eq("author", "a"), QueryCondition.gt("slug", "b"), QueryCondition.lt("slug", "m")],
    )
    assert plan.range_condition == QueryCondition.gt("slug", "b")
    assert plan.residual_conditions == (QueryCondition.lt("slug", "m"),)


def test_range_condition_on_hash_attribute_is_rejected() -> None:
    with pytest.raises(UnsupportedConditionError, match="hash key"):
        plan_query(_people(), [QueryCondition.eq("email", "e1"), QueryCondition.gt("email", "a")])


def test_unknown_attribute_is_rejected() -> None:
    with pytest.raises(ValidationError, match="unknown field"):
        plan_query(_people(), [QueryCondition.eq("nickname", "x")])

    with pytest.raises(ValidationError, match="unknown field"):
        plan_query(_people(), [QueryCondition.eq("id", "x")], projection=["nickname"])


def test_plan_id_is_deterministic_and_projection_sorted() -> None:
    conds = [QueryCondition.eq("email", "e1"), QueryCondition.gt("age", 3)]
    a = plan_query(_people(), conds, projection=["first_name", "age"])
    b = plan_query(_people(), conds, projection=["age", "first_name"])
    assert a.id == b.id
    assert a.projection == ("age", "first_name")
    assert a.id.startswith("query|Person|idx=by-email")
