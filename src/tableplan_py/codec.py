from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import MISSING, fields, is_dataclass
from decimal import Decimal
from typing import Any, cast, get_args, get_origin, get_type_hints

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

from .conditions import QueryCondition
from .errors import ValidationError
from .model import AttributeDefinition, ModelDefinition

type WireItem = dict[str, Any]
type WireKey = dict[str, Any]
type RangeKeyOverride = tuple[str, Any]


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if value is False:
        return True
    if value == 0:
        return True
    if isinstance(value, (str, bytes, bytearray)) and len(value) == 0:
        return True
    if isinstance(value, (list, dict, set, tuple)) and len(value) == 0:
        return True
    return False


def _coerce_value(value: Any, annotation: Any) -> Any:
    if value is None:
        return None

    if annotation is int and isinstance(value, Decimal):
        return int(value)
    if annotation is float and isinstance(value, Decimal):
        return float(value)

    origin = get_origin(annotation)
    if origin is set and isinstance(value, set):
        (elem_type,) = get_args(annotation) or (Any,)
        return {_coerce_value(v, elem_type) for v in value}

    return value


class ItemCodec[T]:
    """Converts between model instances and DynamoDB wire items."""

    def __init__(self, model: ModelDefinition[T]) -> None:
        self._model = model
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()
        self._annotations = _annotations(model.model_type)

    @property
    def model(self) -> ModelDefinition[T]:
        return self._model

    def attribute_name(self, field_name: str) -> str:
        attr_def = self._model.attributes.get(field_name)
        if attr_def is None:
            raise ValidationError(f"unknown field: {field_name}")
        return attr_def.attribute_name

    def serialize(self, value: Any) -> Any:
        if isinstance(value, float):
            value = Decimal(str(value))
        return self._serializer.serialize(value)

    def deserialize(self, av: Any) -> Any:
        return self._deserializer.deserialize(av)

    def encode_value(self, field_name: str, value: Any) -> Any:
        attr_def = self._model.attributes.get(field_name)
        if attr_def is None:
            raise ValidationError(f"unknown field: {field_name}")
        return self._serialize_attr_value(attr_def, value)

    def decode_value(self, field_name: str, av: Any) -> Any:
        attr_def = self._model.attributes[field_name]
        raw = self._deserializer.deserialize(av)
        if attr_def.json and isinstance(raw, str):
            raw = json.loads(raw)
        if attr_def.converter is not None and raw is not None:
            raw = attr_def.converter.from_dynamodb(raw)
        return _coerce_value(raw, self._annotations.get(field_name, Any))

    def encode_condition(self, cond: QueryCondition) -> QueryCondition:
        """Rewrite a field-level condition into wire attribute names and encoded values."""
        attr_def = self._model.attributes.get(cond.attribute)
        if attr_def is None:
            raise ValidationError(f"unknown field: {cond.attribute}")
        return QueryCondition(
            attribute=attr_def.attribute_name,
            op=cond.op,
            values=tuple(self._serialize_attr_value(attr_def, v) for v in cond.values),
        )

    def _serialize_attr_value(self, attr_def: AttributeDefinition, value: Any) -> Any:
        if attr_def.converter is not None and value is not None:
            value = attr_def.converter.to_dynamodb(value)

        if attr_def.set and isinstance(value, set) and len(value) == 0:
            return self._serializer.serialize(None)

        if attr_def.json and value is not None:
            value = json.dumps(value, separators=(",", ":"), sort_keys=True)

        return self.serialize(value)

    def to_item(self, item: T) -> WireItem:
        if not is_dataclass(item) or isinstance(item, type):
            raise ValidationError("item must be a dataclass instance")

        out: WireItem = {}
        for field_name, attr_def in self._model.attributes.items():
            value = getattr(item, field_name)
            if attr_def.omitempty and _is_empty(value):
                continue
            out[attr_def.attribute_name] = self._serialize_attr_value(attr_def, value)

        if out.get(self._model.pk.attribute_name, {"NULL": True}) == {"NULL": True}:
            raise ValidationError("missing pk")
        if self._model.sk is not None and out.get(self._model.sk.attribute_name, {"NULL": True}) == {
            "NULL": True
        }:
            raise ValidationError("missing sk")

        return out

    def from_item(self, item: Mapping[str, Any]) -> T:
        model_cls = self._model.model_type

        kwargs: dict[str, Any] = {}
        for dc_field in fields(cast(Any, model_cls)):
            attr_def = self._model.attributes.get(dc_field.name)
            if attr_def is None or attr_def.attribute_name not in item:
                continue
            kwargs[dc_field.name] = self.decode_value(dc_field.name, item[attr_def.attribute_name])

        try:
            return model_cls(**kwargs)
        except TypeError as err:
            raise ValidationError(str(err)) from err

    def from_mapping(self, values: Mapping[str, Any]) -> T:
        unknown = set(values).difference(f.name for f in fields(cast(Any, self._model.model_type)))
        if unknown:
            raise ValidationError(f"unknown fields: {sorted(unknown)}")
        try:
            return self._model.model_type(**values)
        except TypeError as err:
            raise ValidationError(str(err)) from err

    def to_key(self, pk: Any, sk: Any | None = None, *, range_key: RangeKeyOverride | None = None) -> WireKey:
        if pk is None:
            raise ValidationError("pk is required")

        key: WireKey = {self._model.pk.attribute_name: self._serialize_attr_value(self._model.pk, pk)}
        if range_key is not None:
            name, value = range_key
            if value is None:
                raise ValidationError(f"range key override {name!r} has no value")
            attr_def = self._model.attributes.get(name)
            if attr_def is None:
                key[name] = self.serialize(value)
            else:
                key[attr_def.attribute_name] = self._serialize_attr_value(attr_def, value)
            return key

        if self._model.sk is None and sk is not None:
            raise ValidationError("model does not define sk")
        if self._model.sk is not None:
            if sk is None:
                raise ValidationError("sk is required")
            key[self._model.sk.attribute_name] = self._serialize_attr_value(self._model.sk, sk)
        return key

    def key_of(self, record: T) -> tuple[Any, ...]:
        return tuple(getattr(record, name) for name in self._model.key_fields())

    def record_key(self, record: T, *, range_key: RangeKeyOverride | None = None) -> WireKey:
        pk = getattr(record, self._model.pk.python_name)
        sk = getattr(record, self._model.sk.python_name) if self._model.sk is not None else None
        if range_key is None and self._model.sk is not None and sk is None:
            raise ValidationError(
                f"record has no value for range key {self._model.sk.python_name!r}; pass range_key"
            )
        return self.to_key(pk, sk, range_key=range_key)

    def key_from_item(self, item: Mapping[str, Any]) -> WireKey:
        names = [self._model.pk.attribute_name]
        if self._model.sk is not None:
            names.append(self._model.sk.attribute_name)
        try:
            return {name: item[name] for name in names}
        except KeyError as err:
            raise ValidationError(f"item is missing key attribute {err.args[0]!r}") from err

    def normalize_key(self, key: Any) -> tuple[Any, Any | None]:
        """Accept a record, a bare hash value, or a ``(hash, range)`` tuple."""
        if is_dataclass(key) and not isinstance(key, type):
            pk = getattr(key, self._model.pk.python_name)
            sk = getattr(key, self._model.sk.python_name) if self._model.sk is not None else None
            return pk, sk

        if self._model.sk is None:
            if isinstance(key, tuple):
                if len(key) != 2:
                    raise ValidationError("expected key tuple (pk, None) for pk-only models")
                pk, sk = key
                if sk is not None:
                    raise ValidationError("sk must be None for pk-only models")
                return pk, None
            return key, None

        if not isinstance(key, tuple) or len(key) != 2:
            raise ValidationError("expected key tuple (pk, sk)")
        pk, sk = key
        return pk, sk

    def required_fields(self) -> set[str]:
        required: set[str] = set(self._model.key_fields())
        for dc_field in fields(cast(Any, self._model.model_type)):
            if dc_field.name not in self._model.attributes:
                continue
            if dc_field.default is MISSING and dc_field.default_factory is MISSING:
                required.add(dc_field.name)
        return required


def _annotations(model_type: type[Any]) -> dict[str, Any]:
    try:
        return get_type_hints(model_type)
    except (NameError, TypeError):
        pass

    out: dict[str, Any] = {}
    for klass in reversed(model_type.__mro__):
        out.update(getattr(klass, "__annotations__", {}))
    return out
