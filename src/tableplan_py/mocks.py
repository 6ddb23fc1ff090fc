from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from boto3.dynamodb.types import TypeDeserializer

from .conditions import QueryCondition, matches
from .errors import ConditionFailedError, NotFoundError, ValidationError
from .store import BatchGetResult, ItemCondition, WireItem, WireKey, WriteRequest


class _AnySentinel:
    def __repr__(self) -> str:  # pragma: no cover
        return "ANY"


ANY: Any = _AnySentinel()


def _assert_match(expected: Any, actual: Any, *, path: str) -> None:
    if expected is ANY:
        return

    if isinstance(expected, dict):
        if not isinstance(actual, dict):
            raise AssertionError(f"{path}: expected dict, got {type(actual).__name__}")
        for k, v in expected.items():
            if k not in actual:
                raise AssertionError(f"{path}: missing key {k!r}")
            _assert_match(v, actual[k], path=f"{path}.{k}")
        return

    if isinstance(expected, list):
        if not isinstance(actual, list):
            raise AssertionError(f"{path}: expected list, got {type(actual).__name__}")
        if len(expected) != len(actual):
            raise AssertionError(f"{path}: expected {len(expected)} items, got {len(actual)}")
        for i, (e, a) in enumerate(zip(expected, actual, strict=True)):
            _assert_match(e, a, path=f"{path}[{i}]")
        return

    if expected != actual:
        raise AssertionError(f"{path}: expected {expected!r}, got {actual!r}")


@dataclass(frozen=True)
class ExpectedCall:
    method: str
    expected: Mapping[str, Any] | Callable[[Mapping[str, Any]], None] | None = None
    response: Mapping[str, Any] | None = None
    error: Exception | None = None


class FakeDynamoDBClient:
    """Expectation-based stand-in for a boto3 DynamoDB client."""

    def __init__(self) -> None:
        self._expected: list[ExpectedCall] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def expect(
        self,
        method: str,
        expected: Mapping[str, Any] | Callable[[Mapping[str, Any]], None] | None = None,
        *,
        response: Mapping[str, Any] | None = None,
        error: Exception | None = None,
    ) -> None:
        self._expected.append(ExpectedCall(method=method, expected=expected, response=response, error=error))

    def assert_no_pending(self) -> None:
        if self._expected:
            raise AssertionError(f"pending expected calls: {self._expected!r}")

    def _handle(self, method: str, req: dict[str, Any]) -> Mapping[str, Any]:
        self.calls.append((method, dict(req)))
        if not self._expected:
            raise AssertionError(f"unexpected call: {method}")

        call = self._expected.pop(0)
        if call.method != method:
            raise AssertionError(f"expected {call.method}, got {method}")

        if callable(call.expected):
            call.expected(req)
        elif call.expected is not None:
            _assert_match(dict(call.expected), req, path=method)

        if call.error is not None:
            raise call.error

        return dict(call.response or {})

    def put_item(self, **kwargs: Any) -> Mapping[str, Any]:
        return self._handle("put_item", kwargs)

    def get_item(self, **kwargs: Any) -> Mapping[str, Any]:
        return self._handle("get_item", kwargs)

    def update_item(self, **kwargs: Any) -> Mapping[str, Any]:
        return self._handle("update_item", kwargs)

    def delete_item(self, **kwargs: Any) -> Mapping[str, Any]:
        return self._handle("delete_item", kwargs)

    def query(self, **kwargs: Any) -> Mapping[str, Any]:
        return self._handle("query", kwargs)

    def scan(self, **kwargs: Any) -> Mapping[str, Any]:
        return self._handle("scan", kwargs)

    def batch_get_item(self, **kwargs: Any) -> Mapping[str, Any]:
        return self._handle("batch_get_item", kwargs)

    def batch_write_item(self, **kwargs: Any) -> Mapping[str, Any]:
        return self._handle("batch_write_item", kwargs)


@dataclass(frozen=True)
class StoreCall:
    method: str
    table: str
    args: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class _MemTable:
    hash_key: str
    range_key: str | None
    items: dict[tuple[Any, ...], WireItem] = field(default_factory=dict)

    @property
    def key_names(self) -> tuple[str, ...]:
        return (self.hash_key,) if self.range_key is None else (self.hash_key, self.range_key)


def _av_token(av: Mapping[str, Any]) -> tuple[Any, ...]:
    return tuple(sorted(av.items()))


class InMemoryStore:
    """A StoreClient that keeps wire items in process memory.

    Every call is recorded in ``calls``. ``leave_unprocessed`` and
    ``fail_next`` queue partial failures for the following batch or item
    calls. Batch calls enforce the DynamoDB per-call item limits.
    """

    max_batch_get = 100
    max_batch_write = 25

    def __init__(
        self,
        *,
        latency: float = 0.0,
        on_call: Callable[[StoreCall], None] | None = None,
    ) -> None:
        self._tables: dict[str, _MemTable] = {}
        self._deserializer = TypeDeserializer()
        self._lock = threading.RLock()
        self._unprocessed: list[int] = []
        self._errors: dict[str, list[Exception]] = {}
        self._latency = latency
        self._on_call = on_call
        self._in_flight = 0
        self.peak_in_flight = 0
        self.calls: list[StoreCall] = []

    def create_table(self, name: str, *, hash_key: str, range_key: str | None = None) -> None:
        with self._lock:
            if name in self._tables:
                raise ValidationError(f"table already exists: {name}")
            self._tables[name] = _MemTable(hash_key=hash_key, range_key=range_key)

    def items(self, table: str) -> list[WireItem]:
        with self._lock:
            return [dict(item) for item in self._table(table).items.values()]

    def calls_to(self, method: str) -> list[StoreCall]:
        return [call for call in self.calls if call.method == method]

    def leave_unprocessed(self, *counts: int) -> None:
        """Each following batch call leaves its last ``counts[i]`` entries unprocessed."""
        with self._lock:
            self._unprocessed.extend(counts)

    def fail_next(self, method: str, error: Exception, *, times: int = 1) -> None:
        with self._lock:
            self._errors.setdefault(method, []).extend([error] * times)

    # StoreClient

    def get_item(
        self,
        table: str,
        key: WireKey,
        *,
        consistent_read: bool = False,
        projection: Sequence[str] | None = None,
    ) -> WireItem | None:
        self._enter("get_item", table, key=key, consistent_read=consistent_read, projection=projection)
        try:
            with self._lock:
                mem = self._table(table)
                item = mem.items.get(self._key(mem, key))
                return _project(item, projection) if item is not None else None
        finally:
            self._exit()

    def batch_get_item(
        self,
        table: str,
        keys: Sequence[WireKey],
        *,
        consistent_read: bool = False,
        projection: Sequence[str] | None = None,
    ) -> BatchGetResult:
        self._enter("batch_get_item", table, keys=list(keys), projection=projection)
        try:
            if len(keys) > self.max_batch_get:
                raise ValidationError(f"too many keys in batch_get_item: {len(keys)}")
            with self._lock:
                mem = self._table(table)
                processed, unprocessed = self._split(list(keys))
                found = []
                for key in processed:
                    item = mem.items.get(self._key(mem, key))
                    if item is not None:
                        found.append(_project(item, projection))
                return BatchGetResult(found=found, unprocessed=unprocessed)
        finally:
            self._exit()

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
        self._enter(
            "query",
            table,
            index_name=index_name,
            key_conditions=list(key_conditions),
            filter_conditions=list(filter_conditions),
            projection=projection,
        )
        try:
            if not key_conditions:
                raise ValidationError("query requires a hash key condition")
            if key_conditions[0].op != "eq":
                raise ValidationError("query hash key condition must be eq")
            with self._lock:
                mem = self._table(table)
                conds = [*key_conditions, *filter_conditions]
                return [_project(item, projection) for item in mem.items.values() if self._matches(item, conds)]
        finally:
            self._exit()

    def scan(
        self,
        table: str,
        *,
        filter_conditions: Sequence[QueryCondition] = (),
        projection: Sequence[str] | None = None,
        consistent_read: bool = False,
    ) -> list[WireItem]:
        self._enter("scan", table, filter_conditions=list(filter_conditions), projection=projection)
        try:
            with self._lock:
                mem = self._table(table)
                return [
                    _project(item, projection)
                    for item in mem.items.values()
                    if self._matches(item, filter_conditions)
                ]
        finally:
            self._exit()

    def put_item(self, table: str, item: WireItem, *, condition: ItemCondition | None = None) -> None:
        self._enter("put_item", table, item=item, condition=condition)
        try:
            with self._lock:
                mem = self._table(table)
                key = self._key(mem, item)
                _check(condition, mem.items.get(key))
                mem.items[key] = dict(item)
        finally:
            self._exit()

    def update_item(
        self,
        table: str,
        key: WireKey,
        changes: Mapping[str, Any],
        *,
        condition: ItemCondition | None = None,
    ) -> WireItem:
        self._enter("update_item", table, key=key, changes=dict(changes), condition=condition)
        try:
            if not changes:
                raise ValidationError("no updates provided")
            with self._lock:
                mem = self._table(table)
                token = self._key(mem, key)
                existing = mem.items.get(token)
                _check(condition, existing)
                updated = dict(existing or key)
                for name, av in changes.items():
                    if name in key:
                        raise ValidationError(f"cannot update key attribute: {name}")
                    if av is None:
                        updated.pop(name, None)
                    else:
                        updated[name] = av
                mem.items[token] = updated
                return dict(updated)
        finally:
            self._exit()

    def delete_item(self, table: str, key: WireKey, *, condition: ItemCondition | None = None) -> None:
        self._enter("delete_item", table, key=key, condition=condition)
        try:
            with self._lock:
                mem = self._table(table)
                token = self._key(mem, key)
                _check(condition, mem.items.get(token))
                mem.items.pop(token, None)
        finally:
            self._exit()

    def batch_write_item(self, table: str, requests: Sequence[WriteRequest]) -> list[WriteRequest]:
        self._enter("batch_write_item", table, requests=list(requests))
        try:
            if len(requests) > self.max_batch_write:
                raise ValidationError(f"too many requests in batch_write_item: {len(requests)}")
            with self._lock:
                mem = self._table(table)
                tokens = [self._key(mem, _request_key(req)) for req in requests]
                if len(set(tokens)) != len(tokens):
                    raise ValidationError("batch_write_item contains duplicate keys")

                processed, unprocessed = self._split(list(requests))
                for req in processed:
                    token = self._key(mem, _request_key(req))
                    if "PutRequest" in req:
                        mem.items[token] = dict(req["PutRequest"]["Item"])
                    else:
                        mem.items.pop(token, None)
                return unprocessed
        finally:
            self._exit()

    # Internals

    def _enter(self, method: str, table: str, **args: Any) -> None:
        call = StoreCall(method=method, table=table, args=args)
        with self._lock:
            self.calls.append(call)
            self._in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
            queued = self._errors.get(method)
            error = queued.pop(0) if queued else None

        if self._on_call is not None:
            self._on_call(call)
        if self._latency > 0:
            time.sleep(self._latency)
        if error is not None:
            self._exit()
            raise error

    def _exit(self) -> None:
        with self._lock:
            self._in_flight -= 1

    def _table(self, name: str) -> _MemTable:
        mem = self._tables.get(name)
        if mem is None:
            raise NotFoundError(f"table not found: {name}")
        return mem

    def _key(self, mem: _MemTable, key: Mapping[str, Any]) -> tuple[Any, ...]:
        try:
            return tuple(_av_token(key[name]) for name in mem.key_names)
        except KeyError as err:
            raise ValidationError(f"key element does not match the schema: missing {err.args[0]!r}") from err

    def _split[E](self, entries: list[E]) -> tuple[list[E], list[E]]:
        if not self._unprocessed:
            return entries, []
        count = min(self._unprocessed.pop(0), len(entries))
        if count <= 0:
            return entries, []
        return entries[:-count], entries[-count:]

    def _matches(self, item: Mapping[str, Any], conditions: Sequence[QueryCondition]) -> bool:
        for cond in conditions:
            raw = item.get(cond.attribute)
            value = self._deserializer.deserialize(raw) if raw is not None else None
            decoded = cond.with_values([self._deserializer.deserialize(v) for v in cond.values])
            if not matches(decoded, value):
                return False
        return True


def _request_key(req: Mapping[str, Any]) -> Mapping[str, Any]:
    if "PutRequest" in req:
        return req["PutRequest"]["Item"]
    if "DeleteRequest" in req:
        return req["DeleteRequest"]["Key"]
    raise ValidationError(f"unsupported write request: {sorted(req)}")


def _check(condition: ItemCondition | None, existing: Mapping[str, Any] | None) -> None:
    if condition is None:
        return
    present = existing or {}
    if condition.op == "exists":
        ok = all(attr in present for attr in condition.attributes)
    else:
        ok = not any(attr in present for attr in condition.attributes)
    if not ok:
        raise ConditionFailedError("conditional check failed")


def _project(item: Mapping[str, Any], projection: Sequence[str] | None) -> WireItem:
    if not projection:
        return dict(item)
    return {name: item[name] for name in projection if name in item}
