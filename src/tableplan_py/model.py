from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import MISSING, Field, dataclass, field, fields, is_dataclass, replace
from typing import Any, Literal, Protocol, cast

_METADATA_KEY = "tableplan"

type IndexKind = Literal["GSI", "LSI"]


class ModelDefinitionError(ValueError):
    pass


class AttributeConverter(Protocol):
    def to_dynamodb(self, value: Any) -> Any: ...

    def from_dynamodb(self, value: Any) -> Any: ...


@dataclass(frozen=True)
class AttributeDefinition:
    """How one dataclass field maps onto a DynamoDB attribute."""

    python_name: str
    attribute_name: str
    roles: tuple[str, ...] = ()
    omitempty: bool = False
    set: bool = False
    json: bool = False
    converter: AttributeConverter | None = None


@dataclass(frozen=True)
class Projection:
    type: Literal["ALL", "KEYS_ONLY", "INCLUDE"] = "ALL"
    fields: tuple[str, ...] = ()

    @staticmethod
    def all() -> Projection:
        return Projection()

    @staticmethod
    def keys_only() -> Projection:
        return Projection(type="KEYS_ONLY")

    @staticmethod
    def include(*names: str) -> Projection:
        return Projection(type="INCLUDE", fields=names)


@dataclass(frozen=True)
class IndexDefinition:
    """A secondary index over python field names.

    ``partition`` is None on an LSI until the model resolves it to its own
    hash key field.
    """

    name: str
    type: IndexKind
    partition: str | None
    sort: str | None = None
    projection: Projection = field(default_factory=Projection)


def tableplan_field(
    *,
    name: str | None = None,
    roles: Sequence[str] = (),
    omitempty: bool = False,
    set_: bool = False,
    json: bool = False,
    converter: AttributeConverter | None = None,
    ignore: bool = False,
    default: Any = MISSING,
    default_factory: Any = MISSING,
) -> Any:
    """A dataclass ``field`` carrying the attribute mapping in its metadata."""
    if default is not MISSING and default_factory is not MISSING:
        raise ValueError("tableplan_field: cannot set both default and default_factory")

    options = {
        "name": name,
        "roles": tuple(roles),
        "omitempty": omitempty,
        "set": set_,
        "json": json,
        "converter": converter,
        "ignore": ignore,
    }
    return field(default=default, default_factory=default_factory, metadata={_METADATA_KEY: options})


def gsi(
    name: str,
    *,
    partition: str,
    sort: str | None = None,
    projection: Projection | None = None,
) -> IndexDefinition:
    return IndexDefinition(name=name, type="GSI", partition=partition, sort=sort, projection=projection or Projection())


def lsi(name: str, *, sort: str, projection: Projection | None = None) -> IndexDefinition:
    return IndexDefinition(name=name, type="LSI", partition=None, sort=sort, projection=projection or Projection())


@dataclass(frozen=True)
class ModelDefinition[T]:
    model_type: type[T]
    table_name: str | None
    pk: AttributeDefinition
    sk: AttributeDefinition | None
    attributes: Mapping[str, AttributeDefinition]
    indexes: tuple[IndexDefinition, ...]

    @property
    def entity_name(self) -> str:
        return self.model_type.__name__

    def key_fields(self) -> tuple[str, ...]:
        if self.sk is None:
            return (self.pk.python_name,)
        return (self.pk.python_name, self.sk.python_name)

    @classmethod
    def from_dataclass(
        cls,
        model_type: type[T],
        *,
        table_name: str | None = None,
        indexes: Sequence[IndexDefinition] = (),
    ) -> ModelDefinition[T]:
        if not is_dataclass(model_type):
            raise ModelDefinitionError("model_type must be a dataclass")

        attributes = {
            attr.python_name: attr
            for attr in (_attribute_for(f) for f in fields(model_type))
            if attr is not None
        }
        pks = _with_role(attributes, "pk")
        if len(pks) != 1:
            raise ModelDefinitionError(f"model must define exactly one pk field (found {len(pks)})")
        sks = _with_role(attributes, "sk")
        if len(sks) > 1:
            raise ModelDefinitionError(f"model must define at most one sk field (found {len(sks)})")
        pk = pks[0]
        sk = sks[0] if sks else None

        resolved: dict[str, IndexDefinition] = {}
        for index in indexes:
            if index.name in resolved:
                raise ModelDefinitionError(f"duplicate index name: {index.name}")
            resolved[index.name] = _resolve_index(index, pk, attributes)

        return cls(
            model_type=model_type,
            table_name=table_name,
            pk=pk,
            sk=sk,
            attributes=attributes,
            indexes=tuple(resolved.values()),
        )


def _attribute_for(dc_field: Field[Any]) -> AttributeDefinition | None:
    options = cast(Mapping[str, Any], dc_field.metadata.get(_METADATA_KEY, {}))
    if options.get("ignore"):
        return None
    return AttributeDefinition(
        python_name=dc_field.name,
        attribute_name=options.get("name") or dc_field.name,
        roles=tuple(options.get("roles", ())),
        omitempty=bool(options.get("omitempty")),
        set=bool(options.get("set")),
        json=bool(options.get("json")),
        converter=options.get("converter"),
    )


def _with_role(attributes: Mapping[str, AttributeDefinition], role: str) -> list[AttributeDefinition]:
    return [attr for attr in attributes.values() if role in attr.roles]


def _resolve_index(
    index: IndexDefinition, pk: AttributeDefinition, attributes: Mapping[str, AttributeDefinition]
) -> IndexDefinition:
    if index.type not in ("GSI", "LSI"):
        raise ModelDefinitionError(f"unsupported index type: {index.type}")

    if index.type == "LSI":
        if index.partition not in (None, pk.python_name):
            raise ModelDefinitionError(f"index {index.name}: LSI partition must be the table pk ({pk.python_name})")
        if index.sort is None:
            raise ModelDefinitionError(f"index {index.name}: LSI requires a sort field")
        index = replace(index, partition=pk.python_name)

    if index.partition not in attributes:
        raise ModelDefinitionError(f"index {index.name}: unknown partition field: {index.partition}")
    if index.sort is not None and index.sort not in attributes:
        raise ModelDefinitionError(f"index {index.name}: unknown sort field: {index.sort}")
    return index
