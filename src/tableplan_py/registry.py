from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from .errors import ValidationError
from .model import ModelDefinition


@dataclass(frozen=True)
class KeySchema:
    hash: str
    range: str | None = None

    def fields(self) -> tuple[str, ...]:
        if self.range is None:
            return (self.hash,)
        return (self.hash, self.range)


@dataclass(frozen=True)
class SchemaDescriptor:
    """Key shape of one entity: its primary key and its secondary indexes.

    All names are python field names of the model.
    """

    entity: str
    table_name: str | None
    primary_key: tuple[str, ...]
    secondary_indexes: Mapping[str, KeySchema]
    index_types: Mapping[str, str]
    attributes: frozenset[str] = frozenset()

    @classmethod
    def from_model(cls, model: ModelDefinition[Any]) -> SchemaDescriptor:
        indexes = {
            idx.name: KeySchema(hash=idx.partition or model.pk.python_name, range=idx.sort) for idx in model.indexes
        }
        types = {idx.name: idx.type for idx in model.indexes}
        return cls(
            entity=model.entity_name,
            table_name=model.table_name,
            primary_key=model.key_fields(),
            secondary_indexes=MappingProxyType(indexes),
            index_types=MappingProxyType(types),
            attributes=frozenset(model.attributes),
        )

    @property
    def hash_key(self) -> str:
        return self.primary_key[0]

    @property
    def range_key(self) -> str | None:
        return self.primary_key[1] if len(self.primary_key) > 1 else None

    @property
    def primary(self) -> KeySchema:
        return KeySchema(hash=self.hash_key, range=self.range_key)

    def index(self, name: str) -> KeySchema:
        try:
            return self.secondary_indexes[name]
        except KeyError:
            raise ValidationError(f"unknown index: {name}") from None


class SchemaRegistry:
    """Per-entity schema lookup, built once at startup and then frozen."""

    def __init__(self, models: Iterable[ModelDefinition[Any]] = ()) -> None:
        self._descriptors: dict[str, SchemaDescriptor] = {}
        self._models: dict[str, ModelDefinition[Any]] = {}
        self._frozen = False
        self._lock = threading.Lock()
        for model in models:
            self.register(model)

    def register(self, model: ModelDefinition[Any]) -> SchemaDescriptor:
        with self._lock:
            if self._frozen:
                raise ValidationError("schema registry is frozen")
            name = model.entity_name
            if name in self._descriptors:
                raise ValidationError(f"entity already registered: {name}")
            descriptor = SchemaDescriptor.from_model(model)
            self._descriptors[name] = descriptor
            self._models[name] = model
            return descriptor

    def freeze(self) -> SchemaRegistry:
        with self._lock:
            self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, entity: str | type[Any]) -> SchemaDescriptor:
        return self._descriptors[self._resolve(entity)]

    def model(self, entity: str | type[Any]) -> ModelDefinition[Any]:
        return self._models[self._resolve(entity)]

    def _resolve(self, entity: str | type[Any]) -> str:
        name = entity if isinstance(entity, str) else entity.__name__
        if name not in self._descriptors:
            raise ValidationError(f"unknown entity: {name}")
        return name

    def __contains__(self, entity: object) -> bool:
        if isinstance(entity, str):
            return entity in self._descriptors
        if isinstance(entity, type):
            return entity.__name__ in self._descriptors
        return False

    def __iter__(self) -> Iterator[SchemaDescriptor]:
        return iter(list(self._descriptors.values()))

    def __len__(self) -> int:
        return len(self._descriptors)
