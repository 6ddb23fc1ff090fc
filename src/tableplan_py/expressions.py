from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from .conditions import QueryCondition
from .errors import UnsupportedConditionError, ValidationError

# DynamoDB rejects IN lists longer than this inside a FilterExpression.
MAX_FILTER_IN_VALUES = 100

_COMPARATORS = {"eq": "=", "lt": "<", "lte": "<=", "gt": ">", "gte": ">="}


def pushable(cond: QueryCondition) -> bool:
    """Whether a residual condition can be sent to the store as a filter."""
    if cond.op == "in":
        return 0 < len(cond.values) <= MAX_FILTER_IN_VALUES
    return True


class ExpressionBuilder:
    """Collects placeholder names and values for one request.

    Conditions handed to the builder are wire-level: attribute names are
    DynamoDB attribute names and values are already-encoded attribute values.
    """

    def __init__(self) -> None:
        self.names: dict[str, str] = {}
        self.values: dict[str, Any] = {}
        self._name_refs: dict[str, str] = {}

    def name(self, attribute: str, *, prefix: str = "#n") -> str:
        ref = self._name_refs.get(attribute)
        if ref is None:
            ref = f"{prefix}{len(self._name_refs)}"
            self._name_refs[attribute] = ref
            self.names[ref] = attribute
        return ref

    def value(self, av: Any, *, prefix: str = ":v") -> str:
        ref = f"{prefix}{len(self.values)}"
        self.values[ref] = av
        return ref

    def key_condition(self, hash_cond: QueryCondition, range_cond: QueryCondition | None = None) -> str:
        if hash_cond.op != "eq" or len(hash_cond.values) != 1:
            raise UnsupportedConditionError(f"{hash_cond.attribute}: a query requires a single hash key value")

        expr = f"{self.name(hash_cond.attribute, prefix='#k')} = {self.value(hash_cond.values[0], prefix=':k')}"
        if range_cond is None:
            return expr
        return f"{expr} AND {self._comparison(range_cond, name_prefix='#k', value_prefix=':k')}"

    def filter(self, conditions: Sequence[QueryCondition]) -> str:
        parts = [self._comparison(cond, name_prefix="#f", value_prefix=":f") for cond in conditions]
        return " AND ".join(parts)

    def projection(self, attributes: Sequence[str]) -> str:
        return ", ".join(self.name(attr, prefix="#p") for attr in attributes)

    def _comparison(self, cond: QueryCondition, *, name_prefix: str, value_prefix: str) -> str:
        name = self.name(cond.attribute, prefix=name_prefix)
        op = cond.op

        if op in _COMPARATORS:
            if len(cond.values) != 1:
                raise UnsupportedConditionError(f"{op} requires one value")
            return f"{name} {_COMPARATORS[op]} {self.value(cond.values[0], prefix=value_prefix)}"

        if op == "between":
            if len(cond.values) != 2:
                raise UnsupportedConditionError("between requires two values")
            low = self.value(cond.values[0], prefix=value_prefix)
            high = self.value(cond.values[1], prefix=value_prefix)
            return f"{name} BETWEEN {low} AND {high}"

        if op == "begins_with":
            if len(cond.values) != 1:
                raise UnsupportedConditionError("begins_with requires one value")
            return f"begins_with({name}, {self.value(cond.values[0], prefix=value_prefix)})"

        if op == "in":
            if not cond.values:
                raise UnsupportedConditionError("in requires at least one value")
            if len(cond.values) > MAX_FILTER_IN_VALUES:
                raise UnsupportedConditionError(f"in supports at most {MAX_FILTER_IN_VALUES} values")
            refs = [self.value(v, prefix=value_prefix) for v in cond.values]
            return f"{name} IN (" + ", ".join(refs) + ")"

        raise UnsupportedConditionError(f"unsupported operator: {op}")

    def update(self, changes: Mapping[str, Any]) -> str:
        """``SET`` for encoded values, ``REMOVE`` for ``None``."""
        set_parts: list[str] = []
        remove_parts: list[str] = []
        for attribute, av in changes.items():
            ref = self.name(attribute, prefix="#u")
            if av is None:
                remove_parts.append(ref)
                continue
            set_parts.append(f"{ref} = {self.value(av, prefix=':u')}")

        expr_parts: list[str] = []
        if set_parts:
            expr_parts.append("SET " + ", ".join(set_parts))
        if remove_parts:
            expr_parts.append("REMOVE " + ", ".join(remove_parts))
        if not expr_parts:
            raise ValidationError("no updates provided")
        return " ".join(expr_parts)

    def presence(self, op: str, attributes: Sequence[str]) -> str:
        fn = "attribute_exists" if op == "exists" else "attribute_not_exists"
        return " AND ".join(f"{fn}({self.name(attr, prefix='#c')})" for attr in attributes)

    def apply(self, req: dict[str, Any]) -> dict[str, Any]:
        if self.names:
            req["ExpressionAttributeNames"] = dict(self.names)
        if self.values:
            req["ExpressionAttributeValues"] = dict(self.values)
        return req
