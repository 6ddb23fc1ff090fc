from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass

import boto3

from tableplan_py import ModelDefinition, QueryCondition, Table, gsi, tableplan_field


@dataclass(frozen=True)
class Note:
    pk: str = tableplan_field(roles=["pk"])
    sk: str = tableplan_field(roles=["sk"])
    owner: str = tableplan_field()
    value: int = tableplan_field()


def _client():
    return boto3.client(
        "dynamodb",
        endpoint_url=os.environ.get("DYNAMODB_ENDPOINT", "http://localhost:8000"),
        region_name=os.environ.get("AWS_REGION", "us-east-1"),
        aws_access_key_id=os.environ.get("AWS_ACCESS_KEY_ID", "dummy"),
        aws_secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY", "dummy"),
    )


def main() -> None:
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    client = _client()
    table_name = f"tableplan_py_example_{uuid.uuid4().hex[:12]}"

    client.create_table(
        TableName=table_name,
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}, {"AttributeName": "sk", "KeyType": "RANGE"}],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "owner", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "by-owner",
                "KeySchema": [{"AttributeName": "owner", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            }
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    client.get_waiter("table_exists").wait(TableName=table_name)

    try:
        model = ModelDefinition.from_dataclass(Note, table_name=table_name, indexes=[gsi("by-owner", partition="owner")])
        table = Table(model, client=client)

        table.insert_all(Note(pk="A", sk=f"{i:03d}", owner=f"u{i % 2}", value=i) for i in range(40))

        print("get:", table.get("A", "010"))

        conds = [QueryCondition.in_("owner", ["u0", "u1"]), QueryCondition.gt("value", 35)]
        print("plan:", table.explain(conds))
        print("owners with value > 35:", table.query(conds))

        print("bumped:", table.update_all([QueryCondition.eq("pk", "A"), QueryCondition.lt("value", 5)], {"value": 0}))
        print("deleted:", table.delete_all([QueryCondition.eq("owner", "u1")]))
    finally:
        client.delete_table(TableName=table_name)


if __name__ == "__main__":
    main()
