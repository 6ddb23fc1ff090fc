from __future__ import annotations

import math
import threading
from dataclasses import dataclass

import pytest

from tableplan_py import (
    CancelScope,
    IndexPlan,
    ModelDefinition,
    NotFoundError,
    OperationCanceledError,
    QueryCondition,
    Table,
    ValidationError,
    gsi,
    sort_by,
    tableplan_field,
)
from tableplan_py.batch import BatchConfig
from tableplan_py.testkit import InMemoryStore, no_sleep


@dataclass(frozen=True)
class Person:
    id: str = tableplan_field(roles=["pk"])
    email: str = tableplan_field()
    age: int = tableplan_field()
    name: str = tableplan_field(default="")


@dataclass(frozen=True)
class Post:
    author: str = tableplan_field(roles=["pk"])
    slug: str = tableplan_field(roles=["sk"])
    title: str = tableplan_field(default="")
    views: int = tableplan_field(default=0)


def _people(store: InMemoryStore) -> Table[Person]:
    store.create_table("people", hash_key="id")
    model = ModelDefinition.from_dataclass(Person, table_name="people", indexes=[gsi("by-email", partition="email")])
    return Table(model, store=store, config=BatchConfig(), sleep=no_sleep)


def _posts(store: InMemoryStore) -> Table[Post]:
    store.create_table("posts", hash_key="author", range_key="slug")
    model = ModelDefinition.from_dataclass(Post, table_name="posts")
    return Table(model, store=store, config=BatchConfig(), sleep=no_sleep)


def test_insert_then_get_round_trips() -> None:
    store = InMemoryStore()
    people = _people(store)
    person = Person(id="u1", email="a@example.com", age=33, name="Ann")

    assert people.insert(person) is person
    assert people.get("u1") == person
    assert people.query([QueryCondition.eq("id", "u1")]) == [person]

    with pytest.raises(NotFoundError):
        people.get("nobody")


def test_empty_in_returns_nothing_without_store_calls() -> None:
    store = InMemoryStore()
    people = _people(store)

    assert people.query([QueryCondition.in_("id", [])]) == []
    assert people.query([QueryCondition.in_("email", []), QueryCondition.gt("age", 3)]) == []
    assert store.calls == []


@pytest.mark.parametrize("count", [100, 110])
def test_batch_read_chunks_keys_and_dedupes(count: int) -> None:
    store = InMemoryStore()
    people = _people(store)
    records = [Person(id=f"u{i:03d}", email=f"{i}@example.com", age=i) for i in range(count)]
    people.insert_all(records)

    ids = [r.id for r in records]
    found = people.query([QueryCondition.in_("id", ids + ids[:7])])

    assert len(found) == count
    assert sorted(found, key=lambda p: p.id) == records
    assert len(store.calls_to("batch_get_item")) == math.ceil(count / 100)


def test_composite_key_isolation() -> None:
    store = InMemoryStore()
    posts = _posts(store)
    first = Post(author="a", slug="2024-01", title="one")
    second = Post(author="a", slug="2024-02", title="two")
    posts.insert(second)
    posts.insert(first)
    posts.insert(Post(author="b", slug="2024-01"))

    assert sort_by(posts.query([QueryCondition.eq("author", "a")]), "slug") == [first, second]
    assert posts.query([QueryCondition.eq("author", "a"), QueryCondition.eq("slug", "2024-02")]) == [second]
    assert posts.query([QueryCondition.eq("author", "a"), QueryCondition.begins_with("slug", "2024-0")]) != []


def test_email_index_with_residual_age_filter() -> None:
    store = InMemoryStore()
    people = _people(store)
    young = Person(id="u1", email="e1@example.com", age=25)
    old = Person(id="u2", email="e1@example.com", age=40)
    other = Person(id="u3", email="e2@example.com", age=50)
    unrelated = Person(id="u4", email="e3@example.com", age=60)
    people.insert_all([young, old, other, unrelated])

    conds = [QueryCondition.in_("email", ["e1@example.com", "e2@example.com"]), QueryCondition.gt("age", 30)]
    plan = people.explain(conds)
    assert plan.index_name == "by-email"
    assert plan.residual_conditions == (QueryCondition.gt("age", 30),)

    found = people.query(conds)
    assert sort_by(found, "id") == [old, other]

    queries = store.calls_to("query")
    assert len(queries) == 2
    assert {c.args["index_name"] for c in queries} == {"by-email"}
    assert queries[0].args["filter_conditions"] == [QueryCondition(attribute="age", op="gt", values=({"N": "30"},))]
    assert store.calls_to("scan") == []


def test_range_residual_on_key_attribute_is_not_pushed_down() -> None:
    store = InMemoryStore()
    posts = _posts(store)
    posts.insert_all([Post(author="a", slug=s) for s in ("a", "c", "e", "g")])

    found = posts.query(
        [QueryCondition.eq("author", "a"), QueryCondition.gt("slug", "b"), QueryCondition.lt("slug", "f")]
    )
    assert sorted(p.slug for p in found) == ["c", "e"]
    (call,) = store.calls_to("query")
    assert call.args["filter_conditions"] == []


def test_scan_fallback_applies_filters() -> None:
    store = InMemoryStore()
    people = _people(store)
    people.insert_all([Person(id=f"u{i}", email=f"{i}@x", age=i * 10) for i in range(5)])

    found = people.query([QueryCondition.gte("age", 30)])
    assert sorted(p.age for p in found) == [30, 40]
    assert len(store.calls_to("scan")) == 1


def test_projection_always_fetches_required_and_condition_fields() -> None:
    store = InMemoryStore()
    people = _people(store)
    person = Person(id="u1", email="e1", age=20, name="Ann")
    people.insert(person)

    found = people.query([QueryCondition.eq("email", "e1")], projection=["age"])
    assert found == [Person(id="u1", email="e1", age=20)]
    (call,) = store.calls_to("query")
    assert call.args["projection"] == ["age", "email", "id"]


def test_consistent_read_is_rejected_on_gsi() -> None:
    people = _people(InMemoryStore())
    with pytest.raises(ValidationError, match="consistent_read"):
        people.query([QueryCondition.eq("email", "e1")], consistent_read=True)


def test_get_by_returns_single_record_or_none() -> None:
    store = InMemoryStore()
    posts = _posts(store)
    post = Post(author="a", slug="s1")
    posts.insert_all([post, Post(author="a", slug="s2")])

    assert posts.get_by([QueryCondition.eq("author", "a"), QueryCondition.eq("slug", "s1")]) == post
    assert posts.get_by([QueryCondition.eq("author", "a"), QueryCondition.eq("slug", "zz")]) is None
    with pytest.raises(ValidationError, match="at most one"):
        posts.get_by([QueryCondition.eq("author", "a")])


def test_cancelled_query_makes_no_store_calls() -> None:
    store = InMemoryStore()
    people = _people(store)
    event = threading.Event()
    event.set()

    with pytest.raises(OperationCanceledError):
        people.query([QueryCondition.in_("id", ["a", "b"])], cancel=CancelScope(event=event))
    with pytest.raises(OperationCanceledError):
        people.query([QueryCondition.eq("id", "a")], cancel=CancelScope(event=event))
    assert store.calls == []


def test_parallel_query_fan_out() -> None:
    store = InMemoryStore()
    store.create_table("people", hash_key="id")
    model = ModelDefinition.from_dataclass(Person, table_name="people", indexes=[gsi("by-email", partition="email")])
    people = Table(model, store=store, config=BatchConfig(max_workers=4), sleep=no_sleep)
    people.insert_all([Person(id=f"u{i}", email=f"e{i % 3}", age=i) for i in range(12)])

    found = people.query([QueryCondition.in_("email", ["e0", "e1", "e2", "e9"])])
    assert len(found) == 12
    assert len(store.calls_to("query")) == 4


def test_malformed_plans_are_rejected() -> None:
    people = _people(InMemoryStore())
    for operation in ("get_item", "query"):
        plan = IndexPlan(
            id="broken",
            entity="Person",
            operation=operation,
            index_name=None,
            index_type="TABLE",
            hash_attribute=None,
            range_attribute=None,
        )
        with pytest.raises(ValidationError, match="no hash key"):
            people._execute(plan, fetch=None, consistent_read=False, cancel=None)
