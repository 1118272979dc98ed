# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Record <-> wire conversion for the JSON value format.

Wire conventions (what the engine's JSON serde reads and writes):

- TIMESTAMP and BIGINT-backed timestamps: epoch milliseconds
- DATE: days since epoch; TIME: milliseconds since midnight
- DECIMAL: JSON number written as exact text and read back as Decimal;
  BYTES: base64 text
- keys: a single key column is written as its text; a composite key is the
  key texts joined with "|", in key order

Inbound column names are matched case-insensitively because the engine
upper-cases unquoted identifiers in everything it emits.
"""

import base64
import binascii
from collections.abc import Mapping
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ValidationError

from ..core.types import COMPOSITE_KEY_SEPARATOR
from ..core.utils import dumps, loads
from ..errors import DeserializationError, SerializationError
from ..schema.metadata import EntityDescriptor, PropertyDescriptor
from ..schema.statements import ValueFormat
from ..transport.bus import Received

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_EPOCH_DATE = date(1970, 1, 1)
_MS = timedelta(milliseconds=1)


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------


def to_wire(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, Enum):
        return to_wire(value.value)
    if isinstance(value, (float, Decimal)):
        return value
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
        return (aware - _EPOCH) // _MS
    if isinstance(value, date):
        return (value - _EPOCH_DATE).days
    if isinstance(value, time):
        return ((value.hour * 60 + value.minute) * 60 + value.second) * 1000 + value.microsecond // 1000
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): to_wire(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_wire(v) for v in value]
    if isinstance(value, BaseModel):
        return to_wire(value.model_dump())
    raise TypeError(f"cannot encode {type(value).__name__}")


def _key_text(value: Any) -> str:
    wire = to_wire(value)
    if isinstance(wire, bool):
        return "true" if wire else "false"
    return wire if isinstance(wire, str) else str(wire)


def _check_decimal(desc: EntityDescriptor, prop: PropertyDescriptor, value: Decimal) -> None:
    assert prop.decimal is not None
    if not value.is_finite():
        raise SerializationError(
            f"{desc.entity_name}.{prop.name}: {value} is not a finite decimal",
            entity=desc.entity_name,
            topic=desc.topic_name,
            field=prop.name,
        )
    _, digits, exp = value.normalize().as_tuple()
    assert isinstance(exp, int)
    frac = max(0, -exp)
    whole = max(0, len(digits) + exp)
    p, s = prop.decimal.precision, prop.decimal.scale
    if frac > s or whole > p - s:
        raise SerializationError(
            f"{desc.entity_name}.{prop.name}: {value} does not fit DECIMAL({p}, {s})",
            entity=desc.entity_name,
            topic=desc.topic_name,
            field=prop.name,
        )


def prepare(desc: EntityDescriptor, record: BaseModel) -> dict[str, Any]:
    """
    Column -> python value for an outbound record: defaults filled in,
    decimal precision checked, key columns non-null.
    """
    if not isinstance(record, desc.record_type):
        raise SerializationError(
            f"expected {desc.entity_name}, got {type(record).__name__}",
            entity=desc.entity_name,
            topic=desc.topic_name,
        )
    out: dict[str, Any] = {}
    for prop in desc.properties:
        value = getattr(record, prop.name)
        if value is None and prop.default is not None:
            value = prop.default.value
        if value is None and prop.is_key:
            raise SerializationError(
                f"{desc.entity_name}.{prop.name}: key property is null",
                entity=desc.entity_name,
                topic=desc.topic_name,
                field=prop.name,
            )
        if prop.decimal is not None and value is not None:
            _check_decimal(desc, prop, Decimal(value))
        out[prop.column] = value
    return out


def encode_key(desc: EntityDescriptor, columns: Mapping[str, Any]) -> bytes | None:
    if not desc.key_properties:
        return None
    parts = [_key_text(columns[p.column]) for p in desc.key_properties]
    return COMPOSITE_KEY_SEPARATOR.join(parts).encode("utf-8")


def encode_value(desc: EntityDescriptor, columns: Mapping[str, Any], value_format: ValueFormat) -> bytes:
    if value_format is not ValueFormat.JSON:
        raise SerializationError(
            f"value format {value_format.value} cannot be written without a schema registry; use JSON",
            entity=desc.entity_name,
            topic=desc.topic_name,
        )
    try:
        return dumps({col: to_wire(v) for col, v in columns.items()})
    except (TypeError, ValueError) as e:
        raise SerializationError(str(e), entity=desc.entity_name, topic=desc.topic_name) from e


def encode(desc: EntityDescriptor, record: BaseModel, value_format: ValueFormat) -> tuple[bytes | None, bytes]:
    columns = prepare(desc, record)
    return encode_key(desc, columns), encode_value(desc, columns, value_format)


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------


def _from_wire(prop: PropertyDescriptor, value: Any) -> Any:
    tp = prop.declared_type
    if value is None or not isinstance(tp, type):
        return value
    if isinstance(value, Decimal) and issubclass(tp, float):
        return float(value)
    if issubclass(tp, datetime) and isinstance(value, int) and not isinstance(value, bool):
        return _EPOCH + value * _MS
    if issubclass(tp, date) and not issubclass(tp, datetime) and isinstance(value, int):
        return _EPOCH_DATE + timedelta(days=value)
    if issubclass(tp, time) and isinstance(value, int):
        return (datetime.min + value * _MS).time()
    if issubclass(tp, (bytes, bytearray)) and isinstance(value, str):
        return base64.b64decode(value, validate=True)
    return value


def record_from_columns(desc: EntityDescriptor, columns: Mapping[str, Any]) -> BaseModel:
    """Build a record from a {column: wire value} mapping (pull-query rows, decoded messages)."""
    folded = {str(k).lower(): v for k, v in columns.items()}
    data: dict[str, Any] = {}
    for prop in desc.properties:
        key = prop.column.lower()
        if key in folded:
            data[prop.column] = _from_wire(prop, folded[key])
    return desc.record_type.model_validate(data)


def _key_columns(desc: EntityDescriptor, key: bytes | None) -> dict[str, Any]:
    if key is None or not desc.key_properties:
        return {}
    text = key.decode("utf-8")
    if len(desc.key_properties) == 1:
        return {desc.key_properties[0].column: text}
    parts = text.split(COMPOSITE_KEY_SEPARATOR)
    if len(parts) != len(desc.key_properties):
        return {}
    return {p.column: v for p, v in zip(desc.key_properties, parts)}


def decode(desc: EntityDescriptor, msg: Received) -> BaseModel:
    """Decode one raw message; any failure becomes a DeserializationError."""

    def fail(reason: str) -> DeserializationError:
        return DeserializationError(
            f"{desc.entity_name}: {reason}",
            entity=desc.entity_name,
            topic=msg.topic,
            partition=msg.partition,
            offset=msg.offset,
            raw=msg.value,
        )

    if msg.value is None:
        raise fail("message has no value (tombstone)")
    try:
        payload = loads(msg.value)
    except (UnicodeDecodeError, ValueError) as e:
        raise fail(f"payload is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise fail(f"payload must be a JSON object, got {type(payload).__name__}")

    try:
        key_cols = _key_columns(desc, msg.key)
    except UnicodeDecodeError as e:
        raise fail("message key is not UTF-8") from e
    present = {str(k).lower() for k in payload}
    for col, val in key_cols.items():
        if col.lower() not in present:
            payload[col] = val

    try:
        return record_from_columns(desc, payload)
    except (ValidationError, binascii.Error, OverflowError, ValueError) as e:
        raise fail(f"payload does not match {desc.entity_name}: {e}") from e
