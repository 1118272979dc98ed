# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Statement text generation.

Everything here is a pure function of descriptors and options: identical input
always renders identical text, which is what makes create() idempotence checks
and byte-exact tests possible. Nothing is sent anywhere from this module.

Templates:

    CREATE STREAM <topic> (<col> <TYPE>[ KEY], ...) WITH (KAFKA_TOPIC='<topic>'[, PARTITIONS=n]
        [, REPLICAS=n][, TIMESTAMP='<col>'][, TIMESTAMP_FORMAT='<fmt>'], VALUE_FORMAT='<fmt>');
    CREATE TABLE <topic> (<col> <TYPE>[ PRIMARY KEY], ...) WITH (...);
    CREATE TABLE <name> AS SELECT <exprs> FROM <source>[ WINDOW <window>] GROUP BY <cols> EMIT CHANGES;
    CREATE STREAM|TABLE <name> AS SELECT <side>.<col> AS <col>, ... FROM <left> [LEFT |FULL OUTER ]JOIN <right>
        [WITHIN <n> <UNIT>] ON <left>.<col> = <right>.<col> EMIT CHANGES;
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any

from ..errors import AmbiguousWindow, InvalidJoin, NoKeyDefined, UnknownColumn, UnsupportedType
from .metadata import EntityDescriptor, PropertyDescriptor, TimestampSemantics
from .windows import WindowSpec, render_duration

__all__ = [
    "Aggregation",
    "EntityKind",
    "JoinType",
    "StatementBuilder",
    "ValueFormat",
    "quote_literal",
]


class ValueFormat(str, Enum):
    JSON = "JSON"
    AVRO = "AVRO"
    PROTOBUF = "PROTOBUF"
    DELIMITED = "DELIMITED"
    KAFKA = "KAFKA"


class EntityKind(str, Enum):
    STREAM = "STREAM"
    TABLE = "TABLE"


class JoinType(str, Enum):
    INNER = "inner"
    LEFT = "left"
    FULL_OUTER = "full_outer"

    @property
    def keyword(self) -> str:
        return {"inner": "JOIN", "left": "LEFT JOIN", "full_outer": "FULL OUTER JOIN"}[self.value]


def quote_literal(value: Any) -> str:
    """Render a Python value as a SQL literal ('' escapes quotes inside strings)."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, (datetime, date, time)):
        value = value.isoformat()
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    raise UnsupportedType(f"cannot render {type(value).__name__} as a literal")


@dataclass(frozen=True)
class Aggregation:
    """One aggregate expression of a derived table: `<FUNC>(<column>|*) AS <alias>`."""

    function: str
    column: str | None
    alias: str

    def render(self) -> str:
        arg = self.column if self.column is not None else "*"
        return f"{self.function}({arg}) AS {self.alias}"

    @classmethod
    def count(cls, alias: str, column: str | None = None) -> Aggregation:
        return cls("COUNT", column, alias)

    @classmethod
    def sum(cls, column: str, alias: str) -> Aggregation:
        return cls("SUM", column, alias)

    @classmethod
    def avg(cls, column: str, alias: str) -> Aggregation:
        return cls("AVG", column, alias)

    @classmethod
    def min(cls, column: str, alias: str) -> Aggregation:
        return cls("MIN", column, alias)

    @classmethod
    def max(cls, column: str, alias: str) -> Aggregation:
        return cls("MAX", column, alias)

    @classmethod
    def latest_by_offset(cls, column: str, alias: str | None = None) -> Aggregation:
        return cls("LATEST_BY_OFFSET", column, alias or column)

    @classmethod
    def earliest_by_offset(cls, column: str, alias: str | None = None) -> Aggregation:
        return cls("EARLIEST_BY_OFFSET", column, alias or column)

    @classmethod
    def collect_list(cls, column: str, alias: str) -> Aggregation:
        return cls("COLLECT_LIST", column, alias)


class StatementBuilder:
    """
    Renders statements for one context.

    `default_partitions`/`default_replicas` fill in counts a record type leaves
    unset; when those are None too, the clause is omitted and the engine decides.
    """

    def __init__(
        self,
        *,
        value_format: ValueFormat | str = ValueFormat.JSON,
        default_partitions: int | None = None,
        default_replicas: int | None = None,
    ) -> None:
        self.value_format = ValueFormat(value_format)
        self.default_partitions = default_partitions
        self.default_replicas = default_replicas

    # ---- CREATE STREAM / TABLE

    def create(self, kind: EntityKind, desc: EntityDescriptor) -> str:
        key_marker = " KEY" if kind is EntityKind.STREAM else " PRIMARY KEY"
        columns = ", ".join(self._column_def(p, key_marker) for p in desc.properties)
        return f"CREATE {kind.value} {desc.topic_name} ({columns}) WITH ({self._with_clause(desc)});"

    def create_stream(self, desc: EntityDescriptor) -> str:
        return self.create(EntityKind.STREAM, desc)

    def create_table(self, desc: EntityDescriptor) -> str:
        return self.create(EntityKind.TABLE, desc)

    def _column_def(self, prop: PropertyDescriptor, key_marker: str) -> str:
        out = f"{prop.column} {prop.ksql_type}"
        if prop.is_key:
            out += key_marker
        if prop.default is not None:
            out += f" DEFAULT {quote_literal(prop.default.value)}"
        return out

    def _with_clause(self, desc: EntityDescriptor) -> str:
        parts = [f"KAFKA_TOPIC={quote_literal(desc.topic_name)}"]
        partitions = desc.partitions if desc.partitions is not None else self.default_partitions
        replicas = desc.replicas if desc.replicas is not None else self.default_replicas
        if partitions is not None:
            parts.append(f"PARTITIONS={partitions}")
        if replicas is not None:
            parts.append(f"REPLICAS={replicas}")
        ts = desc.timestamp_property
        # processing-time records keep the engine's arrival timestamp
        if ts is not None and ts.timestamp is not None and ts.timestamp.semantics is TimestampSemantics.EVENT_TIME:
            parts.append(f"TIMESTAMP={quote_literal(ts.column)}")
            if ts.timestamp.format is not None:
                parts.append(f"TIMESTAMP_FORMAT={quote_literal(ts.timestamp.format)}")
        parts.append(f"VALUE_FORMAT={quote_literal(self.value_format.value)}")
        return ", ".join(parts)

    # ---- CREATE TABLE ... AS SELECT

    def create_table_as(
        self,
        target: EntityDescriptor,
        source: EntityDescriptor,
        *,
        windows: Sequence[WindowSpec] = (),
        group_by: Sequence[str] = (),
        aggregations: Sequence[Aggregation] | None = None,
    ) -> str:
        """
        Derived table over `source`.

        Group columns default to the target's key columns. Without explicit
        aggregations, every other target column is carried as
        LATEST_BY_OFFSET(<col>). Explicit aggregations need exactly one window.
        """
        entity = target.entity_name
        if len(windows) > 1:
            raise AmbiguousWindow(f"{entity}: expected at most one window, got {len(windows)}", entity=entity)
        if aggregations is not None and len(windows) != 1:
            raise AmbiguousWindow(
                f"{entity}: aggregations require exactly one window, got {len(windows)}", entity=entity
            )

        group_cols = tuple(group_by) or target.key_columns
        if not group_cols:
            raise NoKeyDefined(f"{entity}: derived table needs group-by columns or key properties", entity=entity)
        self._require_columns(source, group_cols, entity)

        exprs = list(group_cols)
        if aggregations is not None:
            self._require_columns(source, [a.column for a in aggregations if a.column is not None], entity)
            exprs.extend(a.render() for a in aggregations)
        else:
            carried = [c for c in target.columns if c not in group_cols]
            self._require_columns(source, carried, entity)
            exprs.extend(Aggregation.latest_by_offset(c).render() for c in carried)

        window = f" WINDOW {windows[0].render()}" if windows else ""
        return (
            f"CREATE TABLE {target.topic_name} AS SELECT {', '.join(exprs)} "
            f"FROM {source.topic_name}{window} GROUP BY {', '.join(group_cols)} EMIT CHANGES;"
        )

    # ---- CREATE STREAM/TABLE ... AS SELECT ... JOIN

    def create_as_join(
        self,
        target: EntityDescriptor,
        left: EntityDescriptor,
        right: EntityDescriptor,
        *,
        left_kind: EntityKind,
        right_kind: EntityKind,
        left_on: str,
        right_on: str,
        join_type: JoinType | str = JoinType.INNER,
        within_ms: int | None = None,
    ) -> str:
        """
        Joined stream or table over two sources.

        stream-stream joins need a WITHIN window; stream-table and table-table
        joins take none. A stream on the left yields a stream, two tables yield a
        table. Each target column is taken from the left source when it has one,
        otherwise from the right.
        """
        entity = target.entity_name
        join_type = JoinType(join_type)
        kind = self.join_result_kind(left_kind, right_kind, join_type, within_ms, entity=entity)
        if left.topic_name == right.topic_name:
            raise InvalidJoin(f"{entity}: cannot join {left.topic_name} with itself", entity=entity)
        self._require_columns(left, [left_on], entity)
        self._require_columns(right, [right_on], entity)

        exprs = []
        for col in target.columns:
            side = left if col in left.columns else right if col in right.columns else None
            if side is None:
                raise UnknownColumn(
                    f"{entity}: column {col!r} found in neither {left.topic_name} nor {right.topic_name}",
                    entity=entity,
                )
            exprs.append(f"{side.topic_name}.{col} AS {col}")

        within = f" WITHIN {render_duration(within_ms)}" if within_ms is not None else ""
        return (
            f"CREATE {kind.value} {target.topic_name} AS SELECT {', '.join(exprs)} "
            f"FROM {left.topic_name} {join_type.keyword} {right.topic_name}{within} "
            f"ON {left.topic_name}.{left_on} = {right.topic_name}.{right_on} EMIT CHANGES;"
        )

    @staticmethod
    def join_result_kind(
        left_kind: EntityKind,
        right_kind: EntityKind,
        join_type: JoinType,
        within_ms: int | None,
        *,
        entity: str,
    ) -> EntityKind:
        if left_kind is EntityKind.STREAM and right_kind is EntityKind.STREAM:
            if within_ms is None:
                raise InvalidJoin(f"{entity}: stream-stream joins need a WITHIN window", entity=entity)
            return EntityKind.STREAM
        if within_ms is not None:
            raise InvalidJoin(f"{entity}: WITHIN only applies to stream-stream joins", entity=entity)
        if left_kind is EntityKind.STREAM:
            if join_type is JoinType.FULL_OUTER:
                raise InvalidJoin(f"{entity}: stream-table joins cannot be FULL OUTER", entity=entity)
            return EntityKind.STREAM
        if right_kind is EntityKind.STREAM:
            raise InvalidJoin(f"{entity}: a table cannot be joined with a stream on its right", entity=entity)
        return EntityKind.TABLE

    @staticmethod
    def _require_columns(source: EntityDescriptor, columns: Iterable[str], entity: str) -> None:
        missing = [c for c in columns if c not in source.columns]
        if missing:
            raise UnknownColumn(f"{entity}: columns {missing} not found in source {source.topic_name}", entity=entity)

    # ---- DROP / pull queries

    def drop(self, kind: EntityKind, name: str, *, delete_topic: bool = False, if_exists: bool = False) -> str:
        guard = "IF EXISTS " if if_exists else ""
        tail = " DELETE TOPIC" if delete_topic else ""
        return f"DROP {kind.value} {guard}{name}{tail};"

    def select_all(self, name: str, *, limit: int | None = None) -> str:
        if limit is not None and limit <= 0:
            raise ValueError("limit must be positive")
        return f"SELECT * FROM {name}" + (f" LIMIT {limit}" if limit is not None else "") + ";"

    def select_by_key(self, desc: EntityDescriptor, key: Sequence[Any]) -> str:
        cols = desc.key_columns
        if len(key) != len(cols):
            raise ValueError(f"{desc.entity_name}: expected {len(cols)} key value(s), got {len(key)}")
        cond = " AND ".join(f"{c} = {quote_literal(v)}" for c, v in zip(cols, key))
        return f"SELECT * FROM {desc.topic_name} WHERE {cond};"
