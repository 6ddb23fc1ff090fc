from __future__ import annotations

import os
import uuid
from collections.abc import Iterator
from dataclasses import dataclass

import boto3
import pytest

from tableplan_py import (
    AlreadyExistsError,
    ModelDefinition,
    NotFoundError,
    QueryCondition,
    Table,
    gsi,
    sort_by,
    tableplan_field,
)
from tableplan_py.batch import BatchConfig

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif("DYNAMODB_ENDPOINT" not in os.environ, reason="DYNAMODB_ENDPOINT is not set"),
]


def _client():
    return boto3.client(
        "dynamodb",
        endpoint_url=os.environ["DYNAMODB_ENDPOINT"],
        region_name=os.environ.get("AWS_REGION", "us-east-1"),
        aws_access_key_id=os.environ.get("AWS_ACCESS_KEY_ID", "dummy"),
        aws_secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY", "dummy"),
    )


@dataclass(frozen=True)
class Order:
    customer: str = tableplan_field(roles=["pk"])
    order_id: str = tableplan_field(roles=["sk"], name="orderId")
    status: str = tableplan_field()
    total: int = tableplan_field(default=0)


@pytest.fixture
def orders() -> Iterator[Table[Order]]:
    table_name = f"tableplan_py_orders_{uuid.uuid4().hex[:12]}"
    client = _client()
    client.create_table(
        TableName=table_name,
        KeySchema=[
            {"AttributeName": "customer", "KeyType": "HASH"},
            {"AttributeName": "orderId", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "customer", "AttributeType": "S"},
            {"AttributeName": "orderId", "AttributeType": "S"},
            {"AttributeName": "status", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "by-status",
                "KeySchema": [{"AttributeName": "status", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            }
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    client.get_waiter("table_exists").wait(TableName=table_name)

    model = ModelDefinition.from_dataclass(Order, table_name=table_name, indexes=[gsi("by-status", partition="status")])
    try:
        yield Table(model, client=client, config=BatchConfig(base_delay_seconds=0.01))
    finally:
        client.delete_table(TableName=table_name)


def test_crud_round_trip(orders: Table[Order]) -> None:
    order = Order(customer="c1", order_id="o1", status="open", total=10)
    orders.insert(order)
    with pytest.raises(AlreadyExistsError):
        orders.insert(order)

    assert orders.get("c1", "o1") == order
    assert orders.update(order, {"total": 12}).total == 12

    orders.delete(("c1", "o1"))
    with pytest.raises(NotFoundError):
        orders.get("c1", "o1")


def test_batch_writes_and_planned_reads(orders: Table[Order]) -> None:
    records = [
        Order(customer=f"c{i % 3}", order_id=f"o{i:03d}", status="open" if i % 2 else "closed", total=i)
        for i in range(60)
    ]
    assert orders.insert_all(records) == 60

    by_customer = orders.query([QueryCondition.in_("customer", ["c0", "c1"])])
    assert len(by_customer) == 40

    plan = orders.explain([QueryCondition.eq("status", "open"), QueryCondition.gte("total", 50)])
    assert plan.index_name == "by-status"
    big_open = orders.query([QueryCondition.eq("status", "open"), QueryCondition.gte("total", 50)])
    assert [o.total for o in sort_by(big_open, "total")] == [51, 53, 55, 57, 59]

    keys = [QueryCondition.eq("customer", "c0"), QueryCondition.in_("order_id", ["o000", "o003", "o999"])]
    assert sorted(o.order_id for o in orders.query(keys)) == ["o000", "o003"]


def test_bulk_update_and_delete(orders: Table[Order]) -> None:
    orders.insert_all([Order(customer="c1", order_id=f"o{i}", status="open", total=i) for i in range(30)])

    assert orders.update_all([QueryCondition.eq("customer", "c1"), QueryCondition.lt("total", 10)], {"status": "void"}) == 10
    assert len(orders.query([QueryCondition.eq("status", "void")])) == 10

    assert orders.delete_all([QueryCondition.eq("customer", "c1")]) == 30
    assert orders.query([QueryCondition.eq("customer", "c1")]) == []
