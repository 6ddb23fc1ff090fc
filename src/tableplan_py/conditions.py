from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Literal

from .errors import UnsupportedConditionError

type Operator = Literal["eq", "in", "lt", "lte", "gt", "gte", "between", "begins_with"]

EQUALITY_OPS: frozenset[str] = frozenset({"eq", "in"})
RANGE_OPS: frozenset[str] = frozenset({"lt", "lte", "gt", "gte", "between"})
# Operators DynamoDB accepts on a sort key inside KeyConditionExpression.
SORT_KEY_OPS: frozenset[str] = frozenset({"eq", "begins_with"}) | RANGE_OPS
OPERATORS: frozenset[str] = EQUALITY_OPS | RANGE_OPS | {"begins_with"}


@dataclass(frozen=True)
class QueryCondition:
    attribute: str
    op: str
    values: tuple[Any, ...] = ()

    @staticmethod
    def eq(attribute: str, value: Any) -> QueryCondition:
        return QueryCondition(attribute=attribute, op="eq", values=(value,))

    @staticmethod
    def in_(attribute: str, values: Iterable[Any]) -> QueryCondition:
        if isinstance(values, (str, bytes, bytearray, Mapping)):
            raise UnsupportedConditionError(f"in: {attribute} requires a sequence of values")
        return QueryCondition(attribute=attribute, op="in", values=tuple(values))

    @staticmethod
    def lt(attribute: str, value: Any) -> QueryCondition:
        return QueryCondition(attribute=attribute, op="lt", values=(value,))

    @staticmethod
    def lte(attribute: str, value: Any) -> QueryCondition:
        return QueryCondition(attribute=attribute, op="lte", values=(value,))

    @staticmethod
    def gt(attribute: str, value: Any) -> QueryCondition:
        return QueryCondition(attribute=attribute, op="gt", values=(value,))

    @staticmethod
    def gte(attribute: str, value: Any) -> QueryCondition:
        return QueryCondition(attribute=attribute, op="gte", values=(value,))

    @staticmethod
    def between(attribute: str, low: Any, high: Any) -> QueryCondition:
        return QueryCondition(attribute=attribute, op="between", values=(low, high))

    @staticmethod
    def begins_with(attribute: str, prefix: Any) -> QueryCondition:
        return QueryCondition(attribute=attribute, op="begins_with", values=(prefix,))

    @property
    def value(self) -> Any:
        if len(self.values) != 1:
            raise UnsupportedConditionError(f"{self.op}: {self.attribute} does not carry a single value")
        return self.values[0]

    def with_attribute(self, attribute: str) -> QueryCondition:
        return QueryCondition(attribute=attribute, op=self.op, values=self.values)

    def with_values(self, values: Sequence[Any]) -> QueryCondition:
        return QueryCondition(attribute=self.attribute, op=self.op, values=tuple(values))


@dataclass(frozen=True)
class ClassifiedConditions:
    conditions: tuple[QueryCondition, ...]
    by_attribute: Mapping[str, tuple[QueryCondition, ...]]

    @property
    def attributes(self) -> tuple[str, ...]:
        return tuple(self.by_attribute)

    @property
    def has_empty_in(self) -> bool:
        return any(c.op == "in" and not c.values for c in self.conditions)

    def for_attribute(self, attribute: str) -> tuple[QueryCondition, ...]:
        return self.by_attribute.get(attribute, ())

    def equality(self, attribute: str) -> QueryCondition | None:
        for cond in self.for_attribute(attribute):
            if cond.op in EQUALITY_OPS:
                return cond
        return None

    def sort_key_condition(self, attribute: str) -> QueryCondition | None:
        for cond in self.for_attribute(attribute):
            if cond.op in SORT_KEY_OPS:
                return cond
        return None

    def ranges(self, attribute: str) -> tuple[QueryCondition, ...]:
        return tuple(c for c in self.for_attribute(attribute) if c.op in RANGE_OPS or c.op == "begins_with")


def _validate(cond: QueryCondition) -> None:
    if not cond.attribute:
        raise UnsupportedConditionError("condition attribute is required")
    if cond.op not in OPERATORS:
        raise UnsupportedConditionError(f"unsupported operator: {cond.op}")
    if cond.op == "in":
        return
    if cond.op == "between":
        if len(cond.values) != 2:
            raise UnsupportedConditionError(f"between: {cond.attribute} requires two values")
        return
    if len(cond.values) != 1:
        raise UnsupportedConditionError(f"{cond.op}: {cond.attribute} requires one value")
    if cond.op == "begins_with" and not isinstance(cond.values[0], (str, bytes, bytearray)):
        raise UnsupportedConditionError(f"begins_with: {cond.attribute} requires a string or binary prefix")


def classify(conditions: Iterable[QueryCondition]) -> ClassifiedConditions:
    ordered: list[QueryCondition] = []
    grouped: dict[str, list[QueryCondition]] = {}
    for cond in conditions:
        if not isinstance(cond, QueryCondition):
            raise UnsupportedConditionError(f"expected QueryCondition, got {type(cond).__name__}")
        _validate(cond)
        ordered.append(cond)
        grouped.setdefault(cond.attribute, []).append(cond)

    return ClassifiedConditions(
        conditions=tuple(ordered),
        by_attribute=MappingProxyType({k: tuple(v) for k, v in grouped.items()}),
    )


def matches(cond: QueryCondition, value: Any) -> bool:
    """Evaluate ``cond`` against a decoded value. Missing values never match."""
    if value is None:
        return False

    op = cond.op
    try:
        if op == "eq":
            return bool(value == cond.values[0])
        if op == "in":
            return any(value == v for v in cond.values)
        if op == "lt":
            return bool(value < cond.values[0])
        if op == "lte":
            return bool(value <= cond.values[0])
        if op == "gt":
            return bool(value > cond.values[0])
        if op == "gte":
            return bool(value >= cond.values[0])
        if op == "between":
            low, high = cond.values
            return bool(low <= value <= high)
    except TypeError:
        return False

    if op == "begins_with":
        prefix = cond.values[0]
        if isinstance(value, str) and isinstance(prefix, str):
            return value.startswith(prefix)
        if isinstance(value, (bytes, bytearray)) and isinstance(prefix, (bytes, bytearray)):
            return bytes(value).startswith(bytes(prefix))
        return False

    raise UnsupportedConditionError(f"unsupported operator: {op}")


def matches_all(conditions: Iterable[QueryCondition], get: Callable[[str], Any]) -> bool:
    """``get`` maps an attribute name to its decoded value."""
    return all(matches(cond, get(cond.attribute)) for cond in conditions)
