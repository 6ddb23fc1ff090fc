from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import is_dataclass
from itertools import product
from typing import Any

from .batch import BatchConfig, BatchPlanner, CancelScope
from .codec import ItemCodec, RangeKeyOverride, WireItem, WireKey, _is_empty
from .conditions import QueryCondition
from .errors import AlreadyExistsError, ConditionFailedError, NotFoundError, ValidationError
from .expressions import pushable
from .merge import merge
from .model import ModelDefinition
from .planner import IndexPlan, plan_query
from .protection import ConcurrencyLimiter
from .registry import SchemaDescriptor, SchemaRegistry
from .store import DynamoDBStoreClient, ItemCondition, StoreClient

logger = logging.getLogger(__name__)


class Table[T]:
    def __init__(
        self,
        model: ModelDefinition[T],
        *,
        store: StoreClient | None = None,
        client: Any | None = None,
        table_name: str | None = None,
        config: BatchConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        limiter: ConcurrencyLimiter | None = None,
        registry: SchemaRegistry | None = None,
    ) -> None:
        if table_name is None:
            table_name = model.table_name
        if not table_name:
            raise ValueError("table_name is required (or set ModelDefinition.table_name)")

        self._model = model
        self._table_name = table_name
        self._store: StoreClient = store if store is not None else DynamoDBStoreClient(client)
        self._codec = ItemCodec(model)
        self._descriptor = (
            registry.get(model.model_type) if registry is not None else SchemaDescriptor.from_model(model)
        )
        self._batch = BatchPlanner(
            self._store,
            table_name,
            config=config or BatchConfig.from_env(),
            sleep=sleep,
            limiter=limiter,
        )

    @property
    def table_name(self) -> str:
        return self._table_name

    @property
    def descriptor(self) -> SchemaDescriptor:
        return self._descriptor

    @property
    def codec(self) -> ItemCodec[T]:
        return self._codec

    # Reads

    def explain(
        self,
        conditions: Iterable[QueryCondition],
        *,
        index: str | None = None,
        projection: Sequence[str] | None = None,
    ) -> IndexPlan:
        return plan_query(self._descriptor, conditions, index, projection=projection)

    def query(
        self,
        conditions: Iterable[QueryCondition],
        *,
        index: str | None = None,
        projection: Sequence[str] | None = None,
        consistent_read: bool = False,
        cancel: CancelScope | None = None,
    ) -> list[T]:
        plan = plan_query(self._descriptor, conditions, index, projection=projection)
        if plan.operation == "empty":
            return []

        fetch: set[str] | None = None
        if plan.projection:
            fetch = set(plan.projection) | self._codec.required_fields() | _condition_fields(plan)

        chunks = self._execute(plan, fetch=fetch, consistent_read=consistent_read, cancel=cancel)
        records = ([self._codec.from_item(item) for item in chunk] for chunk in chunks)
        return merge(records, plan.residual_conditions, key_of=self._codec.key_of)

    def get(self, pk: Any, sk: Any | None = None, *, consistent_read: bool = False) -> T:
        key = self._codec.to_key(pk, sk)
        item = self._store.get_item(self._table_name, key, consistent_read=consistent_read)
        if item is None:
            raise NotFoundError("item not found")
        return self._codec.from_item(item)

    def get_by(
        self,
        conditions: Iterable[QueryCondition],
        *,
        index: str | None = None,
        consistent_read: bool = False,
        cancel: CancelScope | None = None,
    ) -> T | None:
        found = self.query(conditions, index=index, consistent_read=consistent_read, cancel=cancel)
        if not found:
            return None
        if len(found) > 1:
            raise ValidationError(f"expected at most one {self._descriptor.entity}, found {len(found)}")
        return found[0]

    # Writes

    def insert(self, record: T) -> T:
        item = self._codec.to_item(record)
        condition = ItemCondition.not_exists(*self._key_attributes())
        try:
            self._store.put_item(self._table_name, item, condition=condition)
        except ConditionFailedError as err:
            raise AlreadyExistsError(
                f"{self._descriptor.entity} already exists: {self._codec.key_of(record)!r}"
            ) from err
        return record

    def insert_all(self, records: Iterable[T | Mapping[str, Any]], *, cancel: CancelScope | None = None) -> int:
        by_key: dict[tuple[Any, ...], WireItem] = {}
        for raw in records:
            record = self._codec.from_mapping(raw) if isinstance(raw, Mapping) else raw
            item = self._codec.to_item(record)
            key = self._codec.key_of(record)
            by_key.pop(key, None)
            by_key[key] = item

        requests = [{"PutRequest": {"Item": item}} for item in by_key.values()]
        written = self._batch.run_batch_write(requests, cancel=cancel)
        logger.debug("insert_all on %s wrote %d item(s)", self._table_name, written)
        return written

    def update(
        self,
        record: T,
        changes: Mapping[str, Any] | None = None,
        *,
        range_key: RangeKeyOverride | None = None,
    ) -> T:
        key = self._codec.record_key(record, range_key=range_key)
        if changes is None:
            wire_changes = self._record_changes(record, exclude=set(key))
        else:
            wire_changes = self._encode_changes(changes, exclude=set(key))

        try:
            attrs = self._store.update_item(
                self._table_name,
                key,
                wire_changes,
                condition=ItemCondition.exists(self._model.pk.attribute_name),
            )
        except ConditionFailedError as err:
            raise NotFoundError(f"{self._descriptor.entity} not found: {_key_repr(key)}") from err
        return self._codec.from_item(attrs)

    def delete(self, key: Any, *, range_key: RangeKeyOverride | None = None) -> None:
        wire_key = self._resolve_key(key, range_key=range_key)
        try:
            self._store.delete_item(
                self._table_name,
                wire_key,
                condition=ItemCondition.exists(self._model.pk.attribute_name),
            )
        except ConditionFailedError as err:
            raise NotFoundError(f"{self._descriptor.entity} not found: {_key_repr(wire_key)}") from err

    def delete_all(
        self,
        conditions: Iterable[QueryCondition],
        *,
        index: str | None = None,
        cancel: CancelScope | None = None,
    ) -> int:
        keys = self._resolve_keys(conditions, index=index, cancel=cancel)
        if not keys:
            return 0

        requests = [{"DeleteRequest": {"Key": key}} for key in keys]
        deleted = self._batch.run_batch_write(requests, cancel=cancel)
        logger.debug("delete_all on %s deleted %d item(s)", self._table_name, deleted)
        return deleted

    def update_all(
        self,
        conditions: Iterable[QueryCondition],
        changes: Mapping[str, Any],
        *,
        index: str | None = None,
        cancel: CancelScope | None = None,
    ) -> int:
        wire_changes = self._encode_changes(changes, exclude=set(self._key_attributes()))
        keys = self._resolve_keys(conditions, index=index, cancel=cancel)
        if not keys:
            return 0

        condition = ItemCondition.exists(self._model.pk.attribute_name)

        def apply(key: WireKey) -> bool:
            try:
                self._store.update_item(self._table_name, key, wire_changes, condition=condition)
            except ConditionFailedError:
                logger.debug("update_all on %s: %s vanished before update", self._table_name, _key_repr(key))
                return False
            return True

        updated = self._batch.run_each(keys, apply, operation="update_all", cancel=cancel)
        logger.debug("update_all on %s updated %d of %d item(s)", self._table_name, updated, len(keys))
        return updated

    # Internals

    def _execute(
        self,
        plan: IndexPlan,
        *,
        fetch: set[str] | None,
        consistent_read: bool,
        cancel: CancelScope | None,
    ) -> list[list[WireItem]]:
        if plan.index_type == "GSI" and consistent_read:
            raise ValidationError("consistent_read is not supported for GSIs")

        projection = sorted(self._codec.attribute_name(name) for name in fetch) if fetch else None
        logger.debug("executing %s", plan.id)

        if plan.operation in ("get_item", "scan") and cancel is not None:
            cancel.check(plan.operation)

        if plan.operation == "get_item":
            hash_cond = plan.hash_condition
            range_cond = plan.range_condition
            if hash_cond is None:
                raise ValidationError(f"plan {plan.id} has no hash key condition")
            key = self._codec.to_key(hash_cond.value, range_cond.value if range_cond is not None else None)
            item = self._store.get_item(
                self._table_name, key, consistent_read=consistent_read, projection=projection
            )
            return [[item]] if item is not None else []

        if plan.operation == "batch_get_item":
            range_cond = plan.range_condition
            range_values = tuple(dict.fromkeys(range_cond.values)) if range_cond is not None else (None,)
            keys = [self._codec.to_key(h, r) for h, r in product(plan.hash_values, range_values)]
            found = self._batch.run_batch_get(
                keys, consistent_read=consistent_read, projection=projection, cancel=cancel
            )
            return [found]

        if plan.operation == "query":
            return self._run_queries(plan, projection=projection, consistent_read=consistent_read, cancel=cancel)

        filters = [self._codec.encode_condition(c) for c in plan.residual_conditions if pushable(c)]
        items = self._store.scan(
            self._table_name, filter_conditions=filters, projection=projection, consistent_read=consistent_read
        )
        return [items]

    def _run_queries(
        self,
        plan: IndexPlan,
        *,
        projection: list[str] | None,
        consistent_read: bool,
        cancel: CancelScope | None,
    ) -> list[list[WireItem]]:
        hash_attribute = plan.hash_attribute
        if hash_attribute is None:
            raise ValidationError(f"plan {plan.id} has no hash key attribute")
        range_cond = plan.range_condition
        wire_range = self._codec.encode_condition(range_cond) if range_cond is not None else None
        # Key attributes cannot appear in a FilterExpression; those residuals are applied on merge only.
        key_attrs = {hash_attribute, plan.range_attribute}
        filters = [
            self._codec.encode_condition(c)
            for c in plan.residual_conditions
            if c.attribute not in key_attrs and pushable(c)
        ]

        def query_for(value: Any) -> Callable[[], list[WireItem]]:
            key_conditions = [self._codec.encode_condition(QueryCondition.eq(hash_attribute, value))]
            if wire_range is not None:
                key_conditions.append(wire_range)

            def call() -> list[WireItem]:
                return self._store.query(
                    self._table_name,
                    index_name=plan.index_name,
                    key_conditions=key_conditions,
                    filter_conditions=filters,
                    projection=projection,
                    consistent_read=consistent_read,
                )

            return call

        return self._batch.run_queries([query_for(v) for v in plan.hash_values], cancel=cancel)

    def _resolve_keys(
        self,
        conditions: Iterable[QueryCondition],
        *,
        index: str | None,
        cancel: CancelScope | None,
    ) -> list[WireKey]:
        plan = plan_query(self._descriptor, conditions, index)
        if plan.operation == "empty":
            return []

        key_fields = self._model.key_fields()
        fetch = set(key_fields) | _condition_fields(plan)
        chunks = self._execute(plan, fetch=fetch, consistent_read=False, cancel=cancel)
        rows = ([self._decode_fields(item) for item in chunk] for chunk in chunks)
        matched = merge(rows, plan.residual_conditions, key_of=lambda row: tuple(row.get(f) for f in key_fields))

        keys = [self._codec.to_key(*(row.get(f) for f in key_fields)) for row in matched]
        logger.debug("resolved %d key(s) for %s via %s", len(keys), self._descriptor.entity, plan.operation)
        return keys

    def _decode_fields(self, item: Mapping[str, Any]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for name, attr_def in self._model.attributes.items():
            if attr_def.attribute_name in item:
                out[name] = self._codec.decode_value(name, item[attr_def.attribute_name])
        return out

    def _resolve_key(self, key: Any, *, range_key: RangeKeyOverride | None) -> WireKey:
        if range_key is not None and not isinstance(key, tuple) and not is_dataclass(key):
            return self._codec.to_key(key, range_key=range_key)
        if range_key is not None and is_dataclass(key) and not isinstance(key, type):
            return self._codec.record_key(key, range_key=range_key)
        pk, sk = self._codec.normalize_key(key)
        return self._codec.to_key(pk, sk, range_key=range_key)

    def _key_attributes(self) -> list[str]:
        return [self._model.attributes[name].attribute_name for name in self._model.key_fields()]

    def _record_changes(self, record: T, *, exclude: set[str]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for field_name, attr_def in self._model.attributes.items():
            if attr_def.attribute_name in exclude:
                continue
            value = getattr(record, field_name)
            if value is None or (attr_def.omitempty and _is_empty(value)):
                out[attr_def.attribute_name] = None
                continue
            out[attr_def.attribute_name] = self._codec.encode_value(field_name, value)
        if not out:
            raise ValidationError("no updates provided")
        return out

    def _encode_changes(self, changes: Mapping[str, Any], *, exclude: set[str]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for field_name, value in changes.items():
            attr_name = self._codec.attribute_name(field_name)
            if field_name in self._model.key_fields() or attr_name in exclude:
                raise ValidationError(f"cannot update key field: {field_name}")
            out[attr_name] = None if value is None else self._codec.encode_value(field_name, value)
        if not out:
            raise ValidationError("no updates provided")
        return out


def _condition_fields(plan: IndexPlan) -> set[str]:
    return {c.attribute for c in plan.key_conditions} | {c.attribute for c in plan.residual_conditions}


def _key_repr(key: Mapping[str, Any]) -> str:
    parts = []
    for name, av in key.items():
        (value,) = av.values() if isinstance(av, Mapping) and len(av) == 1 else (av,)
        parts.append(f"{name}={value}")
    return ", ".join(parts)
