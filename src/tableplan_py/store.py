from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from botocore.exceptions import ClientError

from .aws_errors import map_client_error as _map_client_error
from .conditions import QueryCondition
from .errors import ValidationError
from .expressions import ExpressionBuilder

logger = logging.getLogger(__name__)

type WireItem = dict[str, Any]
type WireKey = dict[str, Any]
type WriteRequest = dict[str, Any]


@dataclass(frozen=True)
class ItemCondition:
    """Existence check attached to a single-item write."""

    op: Literal["exists", "not_exists"]
    attributes: tuple[str, ...]

    @staticmethod
    def exists(*attributes: str) -> ItemCondition:
        return ItemCondition(op="exists", attributes=tuple(attributes))

    @staticmethod
    def not_exists(*attributes: str) -> ItemCondition:
        return ItemCondition(op="not_exists", attributes=tuple(attributes))


@dataclass(frozen=True)
class BatchGetResult:
    found: list[WireItem] = field(default_factory=list)
    unprocessed: list[WireKey] = field(default_factory=list)


class StoreClient(Protocol):
    """The narrow item API the planner is allowed to use.

    Keys, items and condition values are wire-encoded; condition attributes
    are DynamoDB attribute names.
    """

    def get_item(
        self,
        table: str,
        key: WireKey,
        *,
        consistent_read: bool = False,
        projection: Sequence[str] | None = None,
    ) -> WireItem | None: ...

    def batch_get_item(
        self,
        table: str,
        keys: Sequence[WireKey],
        *,
        consistent_read: bool = False,
        projection: Sequence[str] | None = None,
    ) -> BatchGetResult: ...

    def query(
        self,
        table: str,
        *,
        index_name: str | None,
        key_conditions: Sequence[QueryCondition],
        filter_conditions: Sequence[QueryCondition] = (),
        projection: Sequence[str] | None = None,
        consistent_read: bool = False,
    ) -> list[WireItem]: ...

    def scan(
        self,
        table: str,
        *,
        filter_conditions: Sequence[QueryCondition] = (),
        projection: Sequence[str] | None = None,
        consistent_read: bool = False,
    ) -> list[WireItem]: ...

    def put_item(self, table: str, item: WireItem, *, condition: ItemCondition | None = None) -> None: ...

    def update_item(
        self,
        table: str,
        key: WireKey,
        changes: Mapping[str, Any],
        *,
        condition: ItemCondition | None = None,
    ) -> WireItem: ...

    def delete_item(self, table: str, key: WireKey, *, condition: ItemCondition | None = None) -> None: ...

    def batch_write_item(self, table: str, requests: Sequence[WriteRequest]) -> list[WriteRequest]: ...


class DynamoDBStoreClient:
    """StoreClient over a boto3 low-level DynamoDB client."""

    def __init__(self, client: Any | None = None) -> None:
        if client is None:
            from .runtime import get_dynamodb_client

            client = get_dynamodb_client()
        self._client: Any = client

    @property
    def client(self) -> Any:
        return self._client

    def get_item(
        self,
        table: str,
        key: WireKey,
        *,
        consistent_read: bool = False,
        projection: Sequence[str] | None = None,
    ) -> WireItem | None:
        builder = ExpressionBuilder()
        req: dict[str, Any] = {"TableName": table, "Key": key, "ConsistentRead": consistent_read}
        if projection:
            req["ProjectionExpression"] = builder.projection(projection)

        try:
            resp = self._client.get_item(**builder.apply(req))
        except ClientError as err:  # pragma: no cover
            raise _map_client_error(err) from err

        item = resp.get("Item")
        return item or None

    def batch_get_item(
        self,
        table: str,
        keys: Sequence[WireKey],
        *,
        consistent_read: bool = False,
        projection: Sequence[str] | None = None,
    ) -> BatchGetResult:
        if not keys:
            return BatchGetResult()

        builder = ExpressionBuilder()
        entry: dict[str, Any] = {"Keys": list(keys), "ConsistentRead": consistent_read}
        if projection:
            entry["ProjectionExpression"] = builder.projection(projection)
            entry["ExpressionAttributeNames"] = dict(builder.names)

        try:
            resp = self._client.batch_get_item(RequestItems={table: entry})
        except ClientError as err:  # pragma: no cover
            raise _map_client_error(err) from err

        found = list(resp.get("Responses", {}).get(table, []))
        unprocessed = list(resp.get("UnprocessedKeys", {}).get(table, {}).get("Keys") or [])
        return BatchGetResult(found=found, unprocessed=unprocessed)

    def query(
        self,
        table: str,
        *,
        index_name: str | None,
        key_conditions: Sequence[QueryCondition],
        filter_conditions: Sequence[QueryCondition] = (),
        projection: Sequence[str] | None = None,
        consistent_read: bool = False,
    ) -> list[WireItem]:
        if not key_conditions:
            raise ValidationError("query requires a hash key condition")
        if len(key_conditions) > 2:
            raise ValidationError("query accepts at most a hash and a range key condition")

        builder = ExpressionBuilder()
        hash_cond, *rest = key_conditions
        req: dict[str, Any] = {
            "TableName": table,
            "KeyConditionExpression": builder.key_condition(hash_cond, rest[0] if rest else None),
            "ConsistentRead": consistent_read,
        }
        if index_name is not None:
            req["IndexName"] = index_name
        if filter_conditions:
            req["FilterExpression"] = builder.filter(filter_conditions)
        if projection:
            req["ProjectionExpression"] = builder.projection(projection)
        builder.apply(req)

        return self._paginate("query", req)

    def scan(
        self,
        table: str,
        *,
        filter_conditions: Sequence[QueryCondition] = (),
        projection: Sequence[str] | None = None,
        consistent_read: bool = False,
    ) -> list[WireItem]:
        builder = ExpressionBuilder()
        req: dict[str, Any] = {"TableName": table, "ConsistentRead": consistent_read}
        if filter_conditions:
            req["FilterExpression"] = builder.filter(filter_conditions)
        if projection:
            req["ProjectionExpression"] = builder.projection(projection)
        builder.apply(req)

        return self._paginate("scan", req)

    def _paginate(self, method: str, req: dict[str, Any]) -> list[WireItem]:
        call = getattr(self._client, method)
        out: list[WireItem] = []
        pages = 0
        while True:
            try:
                resp = call(**req)
            except ClientError as err:  # pragma: no cover
                raise _map_client_error(err) from err

            pages += 1
            out.extend(resp.get("Items", []))
            last = resp.get("LastEvaluatedKey")
            if not last:
                break
            req = dict(req, ExclusiveStartKey=last)

        if pages > 1:
            logger.debug("%s on %s read %d pages (%d items)", method, req["TableName"], pages, len(out))
        return out

    def put_item(self, table: str, item: WireItem, *, condition: ItemCondition | None = None) -> None:
        builder = ExpressionBuilder()
        req: dict[str, Any] = {"TableName": table, "Item": item}
        if condition is not None:
            req["ConditionExpression"] = builder.presence(condition.op, condition.attributes)

        try:
            self._client.put_item(**builder.apply(req))
        except ClientError as err:  # pragma: no cover (depends on AWS error shapes)
            raise _map_client_error(err) from err

    def update_item(
        self,
        table: str,
        key: WireKey,
        changes: Mapping[str, Any],
        *,
        condition: ItemCondition | None = None,
    ) -> WireItem:
        builder = ExpressionBuilder()
        req: dict[str, Any] = {
            "TableName": table,
            "Key": key,
            "UpdateExpression": builder.update(changes),
            "ReturnValues": "ALL_NEW",
        }
        if condition is not None:
            req["ConditionExpression"] = builder.presence(condition.op, condition.attributes)

        try:
            resp = self._client.update_item(**builder.apply(req))
        except ClientError as err:  # pragma: no cover
            raise _map_client_error(err) from err

        attrs = resp.get("Attributes")
        if not attrs:
            raise ValidationError("update did not return Attributes")
        return dict(attrs)

    def delete_item(self, table: str, key: WireKey, *, condition: ItemCondition | None = None) -> None:
        builder = ExpressionBuilder()
        req: dict[str, Any] = {"TableName": table, "Key": key}
        if condition is not None:
            req["ConditionExpression"] = builder.presence(condition.op, condition.attributes)

        try:
            self._client.delete_item(**builder.apply(req))
        except ClientError as err:  # pragma: no cover
            raise _map_client_error(err) from err

    def batch_write_item(self, table: str, requests: Sequence[WriteRequest]) -> list[WriteRequest]:
        if not requests:
            return []

        try:
            resp = self._client.batch_write_item(RequestItems={table: list(requests)})
        except ClientError as err:  # pragma: no cover
            raise _map_client_error(err) from err

        return list(resp.get("UnprocessedItems", {}).get(table, []) or [])
