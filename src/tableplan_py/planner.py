from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Literal

from .conditions import ClassifiedConditions, QueryCondition, classify
from .errors import AmbiguousIndexError, InvalidIndexHintError, UnsupportedConditionError, ValidationError
from .registry import KeySchema, SchemaDescriptor

logger = logging.getLogger(__name__)

type PlanOperation = Literal["get_item", "batch_get_item", "query", "scan", "empty"]
type IndexType = Literal["TABLE", "GSI", "LSI"]

# Index names may only contain [A-Za-z0-9_.-], so this never collides with a real index.
PRIMARY_KEY = ":primary"


@dataclass(frozen=True)
class IndexPlan:
    id: str
    entity: str
    operation: PlanOperation
    index_name: str | None
    index_type: IndexType
    hash_attribute: str | None
    range_attribute: str | None
    key_conditions: tuple[QueryCondition, ...] = ()
    residual_conditions: tuple[QueryCondition, ...] = ()
    projection: tuple[str, ...] = ()
    optimization_hints: tuple[str, ...] = ()

    @property
    def hash_condition(self) -> QueryCondition | None:
        for cond in self.key_conditions:
            if cond.attribute == self.hash_attribute:
                return cond
        return None

    @property
    def range_condition(self) -> QueryCondition | None:
        if self.range_attribute is None:
            return None
        for cond in self.key_conditions:
            if cond.attribute == self.range_attribute:
                return cond
        return None

    @property
    def hash_values(self) -> tuple[object, ...]:
        cond = self.hash_condition
        if cond is None:
            return ()
        return tuple(dict.fromkeys(cond.values))


@dataclass(frozen=True)
class _Candidate:
    name: str | None
    keys: KeySchema
    type: IndexType

    @property
    def label(self) -> str:
        return self.name or PRIMARY_KEY


def plan_query(
    descriptor: SchemaDescriptor,
    conditions: Iterable[QueryCondition],
    index_hint: str | None = None,
    *,
    projection: Sequence[str] | None = None,
) -> IndexPlan:
    return select_index(descriptor, classify(conditions), index_hint, projection=projection)


def select_index(
    descriptor: SchemaDescriptor,
    classified: ClassifiedConditions,
    index_hint: str | None = None,
    *,
    projection: Sequence[str] | None = None,
) -> IndexPlan:
    _check_attributes(descriptor, classified, projection)
    projections = tuple(sorted(set(projection or ())))

    if classified.has_empty_in:
        return _build_plan(
            descriptor,
            operation="empty",
            candidate=None,
            key_conditions=(),
            residual=classified.conditions,
            projections=projections,
            hints=("INFO: an IN condition has no values; no store call is made",),
        )

    candidates = _candidates(descriptor, classified)

    if index_hint is not None:
        chosen = _resolve_hint(descriptor, classified, index_hint)
    elif len(candidates) == 1:
        chosen = candidates[0]
    elif candidates:
        raise AmbiguousIndexError(candidates=sorted(c.label for c in candidates))
    else:
        logger.warning(
            "no usable index for %s on %s; falling back to scan",
            descriptor.entity,
            sorted(classified.attributes),
        )
        hints = ["WARNING: Scan reads the full table; prefer an indexed condition when possible"]
        if classified.conditions:
            hints.append("INFO: Filters are applied after retrieval; consider narrowing with keys or indexes")
        if not projections:
            hints.append("TIP: Use projection to select only needed attributes and reduce transfer")
        return _build_plan(
            descriptor,
            operation="scan",
            candidate=None,
            key_conditions=(),
            residual=classified.conditions,
            projections=projections,
            hints=tuple(hints),
        )

    return _plan_for(descriptor, classified, chosen, projections)


def _check_attributes(
    descriptor: SchemaDescriptor,
    classified: ClassifiedConditions,
    projection: Sequence[str] | None,
) -> None:
    if not descriptor.attributes:
        return
    for attr in classified.attributes:
        if attr not in descriptor.attributes:
            raise ValidationError(f"unknown field: {attr}")
    for attr in projection or ():
        if attr not in descriptor.attributes:
            raise ValidationError(f"unknown field: {attr}")


def _candidates(descriptor: SchemaDescriptor, classified: ClassifiedConditions) -> list[_Candidate]:
    out: list[_Candidate] = []
    if classified.equality(descriptor.hash_key) is not None:
        out.append(_Candidate(name=None, keys=descriptor.primary, type="TABLE"))

    for name, keys in descriptor.secondary_indexes.items():
        if classified.equality(keys.hash) is None:
            continue
        index_type = "LSI" if descriptor.index_types.get(name) == "LSI" else "GSI"
        # An LSI shares the table hash key; it only adds something when its own range is constrained.
        if index_type == "LSI" and (keys.range is None or classified.sort_key_condition(keys.range) is None):
            continue
        out.append(_Candidate(name=name, keys=keys, type=index_type))
    return out


def _resolve_hint(descriptor: SchemaDescriptor, classified: ClassifiedConditions, hint: str) -> _Candidate:
    if hint == PRIMARY_KEY:
        candidate = _Candidate(name=None, keys=descriptor.primary, type="TABLE")
    else:
        keys = descriptor.secondary_indexes.get(hint)
        if keys is None:
            raise InvalidIndexHintError(index_name=hint, reason=f"{descriptor.entity} has no such index")
        index_type = "LSI" if descriptor.index_types.get(hint) == "LSI" else "GSI"
        candidate = _Candidate(name=hint, keys=keys, type=index_type)

    if classified.equality(candidate.keys.hash) is None:
        raise InvalidIndexHintError(
            index_name=hint,
            reason=f"no eq/in condition on its hash attribute {candidate.keys.hash!r}",
        )
    return candidate


def _plan_for(
    descriptor: SchemaDescriptor,
    classified: ClassifiedConditions,
    chosen: _Candidate,
    projections: tuple[str, ...],
) -> IndexPlan:
    keys = chosen.keys
    if classified.ranges(keys.hash):
        raise UnsupportedConditionError(
            f"{keys.hash} is the hash key of {chosen.label}; only eq/in conditions are supported on it"
        )

    hash_cond = classified.equality(keys.hash)
    if hash_cond is None:
        raise ValidationError(f"{chosen.label} needs an eq/in condition on {keys.hash}")

    key_conditions: list[QueryCondition] = [hash_cond]
    operation: PlanOperation = "query"
    hints: list[str] = []

    if chosen.name is None:
        range_eq = classified.equality(keys.range) if keys.range else None
        if keys.range is None or range_eq is not None:
            if range_eq is not None:
                key_conditions.append(range_eq)
            single = all(c.op == "eq" for c in key_conditions)
            operation = "get_item" if single else "batch_get_item"
        elif (sort_cond := classified.sort_key_condition(keys.range)) is not None:
            key_conditions.append(sort_cond)
    elif keys.range is not None and (sort_cond := classified.sort_key_condition(keys.range)) is not None:
        key_conditions.append(sort_cond)

    residual = _without(classified.conditions, key_conditions)

    if operation == "batch_get_item":
        count = 1
        for cond in key_conditions:
            count *= len(set(cond.values))
        hints.append(f"INFO: {count} keys are fetched with batched gets")
    if operation == "query":
        fan_out = len(set(hash_cond.values))
        if fan_out > 1:
            hints.append(f"INFO: {fan_out} queries are issued, one per {keys.hash} value")
        if keys.range is not None and len(key_conditions) == 1:
            hints.append("TIP: Add a sort key condition for more efficient queries when possible")
    if residual:
        hints.append("INFO: Filters are applied after retrieval; prefer key conditions when possible")
    if not projections:
        hints.append("TIP: Use projection to select only needed attributes and reduce transfer")

    plan = _build_plan(
        descriptor,
        operation=operation,
        candidate=chosen,
        key_conditions=tuple(key_conditions),
        residual=residual,
        projections=projections,
        hints=tuple(hints),
    )
    logger.debug("planned %s for %s via %s", plan.operation, descriptor.entity, chosen.label)
    return plan


def _without(
    conditions: Sequence[QueryCondition], consumed: Sequence[QueryCondition]
) -> tuple[QueryCondition, ...]:
    used = {id(c) for c in consumed}
    return tuple(c for c in conditions if id(c) not in used)


def _build_plan(
    descriptor: SchemaDescriptor,
    *,
    operation: PlanOperation,
    candidate: _Candidate | None,
    key_conditions: tuple[QueryCondition, ...],
    residual: tuple[QueryCondition, ...],
    projections: tuple[str, ...],
    hints: tuple[str, ...],
) -> IndexPlan:
    index_name = candidate.name if candidate else None
    index_type: IndexType = candidate.type if candidate else "TABLE"
    hash_attr = candidate.keys.hash if candidate else None
    range_attr = candidate.keys.range if candidate else None
    return IndexPlan(
        id=_plan_id(descriptor.entity, operation, index_name, index_type, key_conditions, residual, projections),
        entity=descriptor.entity,
        operation=operation,
        index_name=index_name,
        index_type=index_type,
        hash_attribute=hash_attr,
        range_attribute=range_attr,
        key_conditions=key_conditions,
        residual_conditions=residual,
        projection=projections,
        optimization_hints=hints,
    )


def _plan_id(
    entity: str,
    operation: str,
    index_name: str | None,
    index_type: str,
    key_conditions: Sequence[QueryCondition],
    residual: Sequence[QueryCondition],
    projections: Sequence[str],
) -> str:
    parts = [
        operation,
        entity,
        f"idx={index_name or ''}",
        f"it={index_type}",
        "key=" + ",".join(f"{c.attribute}:{c.op}" for c in key_conditions),
        "filter=" + ",".join(sorted(f"{c.attribute}:{c.op}" for c in residual)),
        f"proj={','.join(projections)}",
    ]
    return "|".join(parts)
