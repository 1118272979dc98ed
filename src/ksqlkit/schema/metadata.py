# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Record declarations and the entity descriptors derived from them.

Records are pydantic models. Per-property metadata is attached with
`typing.Annotated` markers and per-type metadata with the `@topic` decorator:

    @topic("orders", partitions=12, replicas=3)
    class Order(KsqlRecord):
        order_id: Annotated[str, Key()] = Field(alias="OrderId")
        amount: Annotated[Decimal, DecimalPrecision(18, 2)] = Field(alias="Amount")
        order_time: Annotated[datetime, Timestamp("yyyy-MM-dd'T'HH:mm:ss.SSS")] = Field(alias="OrderTime")

`describe(Order)` turns those declarations into an immutable `EntityDescriptor`.
Descriptors are a pure function of the class, so the registry caches them by
type for the life of the process. Markers validate themselves on construction,
so a bad precision fails when the class body is evaluated.
"""

import re
import threading
import types
import typing
from collections import abc
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Annotated, Callable, Final, TypeVar, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from ..errors import (
    DeclarationError,
    InvalidPrecision,
    InvalidTimestamp,
    MissingTopicDeclaration,
    NoKeyDefined,
    UnsupportedType,
)

__all__ = [
    "BigInt",
    "DecimalPrecision",
    "DefaultValue",
    "DescriptorRegistry",
    "EntityDescriptor",
    "IntWidth",
    "Key",
    "KsqlRecord",
    "PropertyDescriptor",
    "SmallInt",
    "Timestamp",
    "TimestampSemantics",
    "TopicSpec",
    "default_entity_name",
    "default_registry",
    "describe",
    "describe_derived",
    "topic",
]

R = TypeVar("R", bound=BaseModel)

_TOPIC_ATTR: Final[str] = "__ksql_topic__"


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------


class KsqlRecord(BaseModel):
    """Convenience base: accepts field names or aliases and ignores engine-added columns."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


@dataclass(frozen=True)
class TopicSpec:
    name: str
    partitions: int | None = None
    replicas: int | None = None

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise DeclarationError("topic name must be a non-empty string")
        for label, val in (("partitions", self.partitions), ("replicas", self.replicas)):
            if val is not None and (isinstance(val, bool) or not isinstance(val, int) or val <= 0):
                raise DeclarationError(f"{label} must be a positive integer, got {val!r}", entity=self.name)


def topic(name: str, *, partitions: int | None = None, replicas: int | None = None) -> Callable[[type[R]], type[R]]:
    """Class decorator declaring the backing topic; unset counts fall back to options defaults."""
    spec = TopicSpec(name, partitions, replicas)

    def deco(cls: type[R]) -> type[R]:
        setattr(cls, _TOPIC_ATTR, spec)
        return cls

    return deco


@dataclass(frozen=True)
class Key:
    """Marks a key property. Composite keys are ordered by `order`, then declaration order."""

    order: int = 0


@dataclass(frozen=True)
class DecimalPrecision:
    precision: int
    scale: int

    def __post_init__(self) -> None:
        if self.precision < 1:
            raise InvalidPrecision(f"decimal precision must be >= 1, got {self.precision}")
        if self.scale < 0 or self.scale > self.precision:
            raise InvalidPrecision(f"decimal scale must be within [0, {self.precision}], got {self.scale}")

    def render(self) -> str:
        return f"DECIMAL({self.precision}, {self.scale})"


class TimestampSemantics(str, Enum):
    EVENT_TIME = "event_time"
    PROCESSING_TIME = "processing_time"


@dataclass(frozen=True)
class Timestamp:
    """
    Marks the record timestamp. With event-time semantics the column is emitted as
    the stream's TIMESTAMP; the format string is opaque and passed through.
    """

    format: str | None = None
    semantics: TimestampSemantics = TimestampSemantics.EVENT_TIME

    def __post_init__(self) -> None:
        if self.format is not None and not self.format.strip():
            raise InvalidTimestamp("timestamp format must be non-empty when given")


@dataclass(frozen=True)
class DefaultValue:
    value: Any


@dataclass(frozen=True)
class IntWidth:
    bits: int

    def __post_init__(self) -> None:
        if self.bits not in (16, 32, 64):
            raise UnsupportedType(f"integer width must be 16, 32 or 64 bits, got {self.bits}")


BigInt = Annotated[int, IntWidth(64)]
SmallInt = Annotated[int, IntWidth(16)]


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PropertyDescriptor:
    name: str
    column: str
    declared_type: Any
    ksql_type: str
    nullable: bool = False
    key: Key | None = None
    decimal: DecimalPrecision | None = None
    timestamp: Timestamp | None = None
    default: DefaultValue | None = None

    @property
    def is_key(self) -> bool:
        return self.key is not None


@dataclass(frozen=True, eq=False)
class EntityDescriptor:
    """Structural facts about one record type, in declaration order."""

    record_type: type[BaseModel]
    topic_name: str
    properties: tuple[PropertyDescriptor, ...]
    key_properties: tuple[PropertyDescriptor, ...]
    partitions: int | None = None
    replicas: int | None = None
    derived: bool = False
    _by_column: dict[str, PropertyDescriptor] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._by_column.update({p.column: p for p in self.properties})

    @property
    def entity_name(self) -> str:
        return self.record_type.__name__

    @property
    def value_properties(self) -> tuple[PropertyDescriptor, ...]:
        return tuple(p for p in self.properties if not p.is_key)

    @property
    def columns(self) -> tuple[str, ...]:
        return tuple(p.column for p in self.properties)

    @property
    def key_columns(self) -> tuple[str, ...]:
        return tuple(p.column for p in self.key_properties)

    @property
    def timestamp_property(self) -> PropertyDescriptor | None:
        return next((p for p in self.properties if p.timestamp is not None), None)

    def column(self, name: str) -> PropertyDescriptor | None:
        """Look a property up by column name, falling back to the Python field name."""
        found = self._by_column.get(name)
        if found is None:
            found = next((p for p in self.properties if p.name == name), None)
        return found


# ---------------------------------------------------------------------------
# Type mapping
# ---------------------------------------------------------------------------

_NONE_TYPE = type(None)


def _unwrap(tp: Any, markers: list[Any]) -> tuple[Any, bool]:
    """Strip Annotated/Optional layers; collect Annotated metadata into `markers`."""
    nullable = False
    while True:
        origin = typing.get_origin(tp)
        if origin is Annotated:
            args = typing.get_args(tp)
            markers.extend(args[1:])
            tp = args[0]
            continue
        if origin is Union or origin is types.UnionType:
            args = [a for a in typing.get_args(tp) if a is not _NONE_TYPE]
            if len(args) != 1:
                # a real union of several types has no single column type
                return tp, nullable
            nullable = True
            tp = args[0]
            continue
        return tp, nullable


def _first(markers: list[Any], kind: type) -> Any:
    return next((m for m in reversed(markers) if isinstance(m, kind)), None)


def ksql_type_for(tp: Any, markers: list[Any], *, entity: str, field_name: str) -> str:
    """Map a Python type (with its markers) to the engine's column type."""
    origin = typing.get_origin(tp)
    if origin in (list, tuple, set, frozenset, abc.Sequence):
        # homogeneous element type only: list[X], tuple[X, ...]
        args = {a for a in typing.get_args(tp) if a is not Ellipsis}
        if len(args) == 1:
            inner_markers: list[Any] = []
            inner, _ = _unwrap(args.pop(), inner_markers)
            return f"ARRAY<{ksql_type_for(inner, inner_markers, entity=entity, field_name=field_name)}>"
    elif origin is dict:
        k_tp, v_tp = typing.get_args(tp) or (None, None)
        if k_tp is not str:
            raise UnsupportedType(
                f"{entity}.{field_name}: map keys must be str, got {k_tp!r}", entity=entity, field=field_name
            )
        inner_markers = []
        inner, _ = _unwrap(v_tp, inner_markers)
        return f"MAP<VARCHAR, {ksql_type_for(inner, inner_markers, entity=entity, field_name=field_name)}>"
    elif isinstance(tp, type):
        if issubclass(tp, bool):
            return "BOOLEAN"
        if issubclass(tp, Enum) and issubclass(tp, str):
            return "VARCHAR"
        if issubclass(tp, int) and not issubclass(tp, Enum):
            width = _first(markers, IntWidth)
            bits = width.bits if width else 32
            return {16: "SMALLINT", 32: "INTEGER", 64: "BIGINT"}[bits]
        if issubclass(tp, float):
            return "DOUBLE"
        if issubclass(tp, Decimal):
            prec = _first(markers, DecimalPrecision)
            if prec is None:
                raise UnsupportedType(
                    f"{entity}.{field_name}: Decimal requires a DecimalPrecision marker", entity=entity, field=field_name
                )
            return prec.render()
        if issubclass(tp, (str, UUID)):
            return "VARCHAR"
        if issubclass(tp, datetime):
            ts = _first(markers, Timestamp)
            if ts is not None and ts.format is None:
                return "BIGINT"
            return "TIMESTAMP"
        if issubclass(tp, date):
            return "DATE"
        if issubclass(tp, time):
            return "TIME"
        if issubclass(tp, (bytes, bytearray)):
            return "BYTES"
    raise UnsupportedType(f"{entity}.{field_name}: no column type for {tp!r}", entity=entity, field=field_name)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def default_entity_name(record_type: type) -> str:
    """Snake-case name for a derived table whose type has no @topic: `OrderTotals` -> `order_totals`."""
    return _CAMEL.sub("_", record_type.__name__).lower()


def _build(record_type: type[BaseModel], *, derived: bool = False, table_name: str | None = None) -> EntityDescriptor:
    if not (isinstance(record_type, type) and issubclass(record_type, BaseModel)):
        raise DeclarationError(f"{record_type!r} is not a pydantic model", entity=str(record_type))
    entity = record_type.__name__

    spec: TopicSpec | None = getattr(record_type, _TOPIC_ATTR, None)
    if spec is None and not derived:
        raise MissingTopicDeclaration(f"{entity} has no @topic declaration", entity=entity)

    props: list[PropertyDescriptor] = []
    for name, info in record_type.model_fields.items():
        markers: list[Any] = list(info.metadata)
        tp, nullable = _unwrap(info.annotation, markers)
        ts = _first(markers, Timestamp)
        props.append(
            PropertyDescriptor(
                name=name,
                column=info.alias or name,
                declared_type=tp,
                ksql_type=ksql_type_for(tp, markers, entity=entity, field_name=name),
                nullable=nullable,
                key=_first(markers, Key),
                decimal=_first(markers, DecimalPrecision),
                timestamp=ts,
                default=_first(markers, DefaultValue),
            )
        )

    stamped = [p.name for p in props if p.timestamp is not None]
    if len(stamped) > 1:
        raise InvalidTimestamp(f"{entity} declares more than one timestamp property: {stamped}", entity=entity)

    indexed = [(p.key.order, i, p) for i, p in enumerate(props) if p.key is not None]
    keys = tuple(p for _, _, p in sorted(indexed, key=lambda t: (t[0], t[1])))
    if not keys and not derived:
        raise NoKeyDefined(f"{entity} declares no key property", entity=entity)

    if derived:
        topic_name = table_name or (spec.name if spec is not None else default_entity_name(record_type))
    else:
        assert spec is not None
        topic_name = spec.name

    return EntityDescriptor(
        record_type=record_type,
        topic_name=topic_name,
        properties=tuple(props),
        key_properties=keys,
        partitions=spec.partitions if spec else None,
        replicas=spec.replicas if spec else None,
        derived=derived,
    )


class DescriptorRegistry:
    """Per-type descriptor cache. Thread-safe; each descriptor is computed once."""

    def __init__(self) -> None:
        self._roots: dict[type, EntityDescriptor] = {}
        self._derived: dict[tuple[type, str | None], EntityDescriptor] = {}
        self._lock = threading.Lock()

    def describe(self, record_type: type[BaseModel]) -> EntityDescriptor:
        """Descriptor for a root stream/table type (topic and key required)."""
        with self._lock:
            desc = self._roots.get(record_type)
            if desc is None:
                desc = _build(record_type)
                self._roots[record_type] = desc
            return desc

    def describe_derived(self, record_type: type[BaseModel], *, name: str | None = None) -> EntityDescriptor:
        """
        Descriptor for a derived table. The table is named `name` when given,
        else after the type's @topic, else `default_entity_name(record_type)`.
        """
        with self._lock:
            cache_key = (record_type, name)
            desc = self._derived.get(cache_key)
            if desc is None:
                desc = _build(record_type, derived=True, table_name=name)
                self._derived[cache_key] = desc
            return desc

    def clear(self) -> None:
        with self._lock:
            self._roots.clear()
            self._derived.clear()


default_registry = DescriptorRegistry()


def describe(record_type: type[BaseModel]) -> EntityDescriptor:
    return default_registry.describe(record_type)


def describe_derived(record_type: type[BaseModel], *, name: str | None = None) -> EntityDescriptor:
    return default_registry.describe_derived(record_type, name=name)
