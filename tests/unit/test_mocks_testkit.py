from __future__ import annotations

from dataclasses import dataclass

import pytest

from tableplan_py import (
    ConditionFailedError,
    DynamoDBStoreClient,
    ModelDefinition,
    NotFoundError,
    QueryCondition,
    Table,
    ValidationError,
    tableplan_field,
)
from tableplan_py.batch import BatchConfig
from tableplan_py.mocks import ANY, FakeDynamoDBClient, InMemoryStore
from tableplan_py.store import ItemCondition
from tableplan_py.testkit import no_sleep


@dataclass(frozen=True)
class Note:
    pk: str = tableplan_field(roles=["pk"])
    sk: str = tableplan_field(roles=["sk"])
    value: int = tableplan_field()


def test_fake_dynamodb_client_records_and_matches_put_item() -> None:
    client = FakeDynamoDBClient()
    client.expect(
        "put_item",
        {
            "TableName": "notes",
            "Item": ANY,
            "ConditionExpression": "attribute_not_exists(#c0) AND attribute_not_exists(#c1)",
        },
    )

    model = ModelDefinition.from_dataclass(Note, table_name="notes")
    table = Table(model, store=DynamoDBStoreClient(client), config=BatchConfig(), sleep=no_sleep)

    table.insert(Note(pk="A", sk="B", value=1))

    client.assert_no_pending()
    assert client.calls[0][0] == "put_item"
    assert client.calls[0][1]["Item"]["value"] == {"N": "1"}


def test_fake_dynamodb_client_asserts_pending_calls() -> None:
    client = FakeDynamoDBClient()
    client.expect("query")
    with pytest.raises(AssertionError, match="pending expected calls"):
        client.assert_no_pending()


def test_fake_dynamodb_client_rejects_unexpected_calls() -> None:
    client = FakeDynamoDBClient()
    with pytest.raises(AssertionError, match="unexpected call: query"):
        client.query()


def test_fake_dynamodb_client_rejects_wrong_method_order() -> None:
    client = FakeDynamoDBClient()
    client.expect("scan")
    with pytest.raises(AssertionError, match="expected scan, got query"):
        client.query()


@pytest.mark.parametrize(
    ("expected", "req", "match"),
    [
        ({"a": 1}, {"a": 2}, "expected 1"),
        ({"a": 1}, {}, "missing key"),
        ({"a": {"b": 1}}, {"a": "nope"}, "expected dict"),
        ({"a": [1]}, {"a": "nope"}, "expected list"),
        ({"a": [1, 2]}, {"a": [1]}, "expected 2 items"),
    ],
)
def test_fake_dynamodb_client_strict_matching(expected: dict, req: dict, match: str) -> None:
    client = FakeDynamoDBClient()
    client.expect("query", expected)
    with pytest.raises(AssertionError, match=match):
        client.query(**req)


def test_fake_dynamodb_client_can_inject_errors() -> None:
    client = FakeDynamoDBClient()
    client.expect("batch_write_item", error=RuntimeError("boom"))
    with pytest.raises(RuntimeError, match="boom"):
        client.batch_write_item()


def test_in_memory_store_enforces_batch_limits() -> None:
    store = InMemoryStore()
    store.create_table("t", hash_key="id")

    keys = [{"id": {"S": str(i)}} for i in range(101)]
    with pytest.raises(ValidationError, match="too many keys"):
        store.batch_get_item("t", keys)

    puts = [{"PutRequest": {"Item": {"id": {"S": str(i)}}}} for i in range(26)]
    with pytest.raises(ValidationError, match="too many requests"):
        store.batch_write_item("t", puts)

    dupes = [{"PutRequest": {"Item": {"id": {"S": "x"}}}}] * 2
    with pytest.raises(ValidationError, match="duplicate keys"):
        store.batch_write_item("t", dupes)

    with pytest.raises(NotFoundError, match="table not found"):
        store.get_item("missing", {"id": {"S": "1"}})


def test_in_memory_store_leaves_unprocessed_entries() -> None:
    store = InMemoryStore()
    store.create_table("t", hash_key="id")
    store.leave_unprocessed(2)

    puts = [{"PutRequest": {"Item": {"id": {"S": str(i)}}}} for i in range(5)]
    unprocessed = store.batch_write_item("t", puts)

    assert unprocessed == puts[3:]
    assert len(store.items("t")) == 3
    assert store.batch_write_item("t", unprocessed) == []


def test_in_memory_store_conditions_and_queries() -> None:
    store = InMemoryStore()
    store.create_table("t", hash_key="pk", range_key="sk")
    store.put_item("t", {"pk": {"S": "a"}, "sk": {"N": "1"}, "v": {"S": "x"}})
    store.put_item("t", {"pk": {"S": "a"}, "sk": {"N": "2"}})
    store.put_item("t", {"pk": {"S": "b"}, "sk": {"N": "1"}})

    with pytest.raises(ConditionFailedError):
        store.put_item("t", {"pk": {"S": "a"}, "sk": {"N": "1"}}, condition=ItemCondition.not_exists("pk"))

    found = store.query(
        "t",
        index_name=None,
        key_conditions=[QueryCondition.eq("pk", {"S": "a"}), QueryCondition.gt("sk", {"N": "1"})],
    )
    assert found == [{"pk": {"S": "a"}, "sk": {"N": "2"}}]

    with pytest.raises(ValidationError, match="must be eq"):
        store.query("t", index_name=None, key_conditions=[QueryCondition.gt("pk", {"S": "a"})])

    updated = store.update_item("t", {"pk": {"S": "a"}, "sk": {"N": "1"}}, {"v": None, "w": {"N": "3"}})
    assert updated == {"pk": {"S": "a"}, "sk": {"N": "1"}, "w": {"N": "3"}}


def test_in_memory_store_fail_next_and_call_log() -> None:
    seen: list[str] = []
    store = InMemoryStore(on_call=lambda call: seen.append(call.method))
    store.create_table("t", hash_key="id")
    store.fail_next("delete_item", RuntimeError("boom"), times=2)

    for _ in range(2):
        with pytest.raises(RuntimeError, match="boom"):
            store.delete_item("t", {"id": {"S": "1"}})
    store.delete_item("t", {"id": {"S": "1"}})

    assert seen == ["delete_item"] * 3
    assert [c.args["key"] for c in store.calls_to("delete_item")] == [{"id": {"S": "1"}}] * 3
    assert store.peak_in_flight == 1
