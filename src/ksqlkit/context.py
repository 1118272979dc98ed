# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
KsqlContext: owns options, the statement executor, the Kafka bus, the
descriptor registry and every stream/table handle built from them.

    async with KsqlContext(KsqlOptions.load()) as ctx:
        orders = ctx.stream(Order)
        await orders.create()
        await orders.insert(Order(order_id="o-1", ...))

        totals = ctx.create_table_from(
            OrderTotals,
            orders,
            window=TumblingWindow(timedelta(minutes=5)),
            aggregations=[Aggregation.sum("Amount", "Total")],
        )
        await totals.create()

        enriched = ctx.create_stream_from_join(EnrichedOrder, orders, ctx.table(Customer), on="CustomerId")

Handles are cached per record type, so `ctx.stream(Order)` always returns the
same handle within one context.
"""

from collections.abc import Sequence
from typing import Any, Generic, TypeVar

from prometheus_client import CollectorRegistry
from pydantic import BaseModel

from .core.config import KsqlOptions
from .core.log import get_logger, warn_once
from .core.time import Clock, SystemClock
from .errors import InvalidJoin
from .runtime.catalog import CreateCatalog
from .runtime.entities import Derivation, JoinDerivation, KsqlEntity, KsqlStream, KsqlTable, RuntimeDeps
from .runtime.metrics import KsqlMetrics
from .schema.metadata import DescriptorRegistry, default_registry
from .schema.statements import Aggregation, EntityKind, JoinType, StatementBuilder
from .schema.windows import Duration, WindowSpec, duration_ms
from .transport.bus import Bus
from .transport.executor import KsqlRestExecutor, StatementExecutor
from .transport.kafka_bus import KafkaBus

T = TypeVar("T", bound=BaseModel)


class KsqlContext:
    def __init__(
        self,
        options: KsqlOptions | None = None,
        *,
        executor: StatementExecutor | None = None,
        bus: Bus | None = None,
        registry: DescriptorRegistry | None = None,
        clock: Clock | None = None,
        metrics_registry: CollectorRegistry | None = None,
    ) -> None:
        self.options = options or KsqlOptions.load()
        self.executor = executor or KsqlRestExecutor(
            self.options.ksqldb_url,
            timeout_ms=self.options.request_timeout_ms,
            default_properties=self.options.statement_properties(),
        )
        self.bus = bus or KafkaBus(self.options.kafka_bootstrap)
        self.registry = registry or default_registry
        self.builder = StatementBuilder(
            value_format=self.options.value_format,
            default_partitions=self.options.default_partitions,
            default_replicas=self.options.default_replicas,
        )
        self.metrics = KsqlMetrics(metrics_registry)
        properties = self.options.statement_properties()
        self._deps = RuntimeDeps(
            executor=self.executor,
            bus=self.bus,
            catalog=CreateCatalog(self.executor, properties=properties),
            builder=self.builder,
            value_format=self.options.value_format,
            properties=properties,
            auto_offset_reset=self.options.auto_offset_reset,
            consumer_group_prefix=self.options.consumer_group_prefix,
            dead_letter_topic=self.options.dead_letter_topic,
            clock=clock or SystemClock(),
            metrics=self.metrics,
        )
        self._streams: dict[type, KsqlStream[Any]] = {}
        self._tables: dict[type, KsqlTable[Any]] = {}
        self._started = False
        self.log = get_logger("context")
        if self.options.schema_registry_url:
            warn_once(
                self.log,
                "context.schema_registry.ignored",
                "schema registry registration is not supported; records are written as JSON",
                schema_registry_url=self.options.schema_registry_url,
            )

    # ---- lifecycle

    async def start(self) -> None:
        if self._started:
            return
        start = getattr(self.executor, "start", None)
        if start is not None:
            await start()
        await self.bus.start()
        self._started = True
        self.log.info("context started", ksqldb_url=self.options.ksqldb_url)

    async def stop(self) -> None:
        await self.bus.stop()
        stop = getattr(self.executor, "stop", None)
        if stop is not None:
            await stop()
        self._started = False
        self.log.info("context stopped")

    async def __aenter__(self) -> KsqlContext:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ---- handles

    def stream(self, record_type: type[T]) -> KsqlStream[T]:
        handle = self._streams.get(record_type)
        if handle is None:
            handle = KsqlStream(
                self._deps, self.registry.describe(record_type), policy=self.options.error_policy()
            )
            self._streams[record_type] = handle
        return handle

    def table(self, record_type: type[T]) -> KsqlTable[T]:
        handle = self._tables.get(record_type)
        if handle is None:
            handle = KsqlTable(self._deps, self.registry.describe(record_type), policy=self.options.error_policy())
            self._tables[record_type] = handle
        return handle

    def create_table_from(
        self,
        record_type: type[T],
        source: KsqlEntity[Any],
        *,
        window: WindowSpec | Sequence[WindowSpec] | None = None,
        aggregations: Sequence[Aggregation] | None = None,
        group_by: Sequence[str] | None = None,
        name: str | None = None,
    ) -> KsqlTable[T]:
        """
        Derived table over `source` (CREATE TABLE ... AS SELECT).

        Declaration problems (unknown columns, window/aggregation mismatch) raise
        here; nothing is sent until `create()`.
        """
        if window is None:
            windows: tuple[WindowSpec, ...] = ()
        elif isinstance(window, WindowSpec):
            windows = (window,)
        else:
            windows = tuple(window)
        descriptor = self.registry.describe_derived(record_type, name=name)
        derivation = Derivation(
            source=source,
            windows=windows,
            group_by=tuple(group_by or ()),
            aggregations=tuple(aggregations) if aggregations is not None else None,
        )
        handle: KsqlTable[T] = KsqlTable(
            self._deps, descriptor, policy=self.options.error_policy(), derivation=derivation
        )
        return handle

    def create_stream_from_join(
        self,
        record_type: type[T],
        left: KsqlEntity[Any],
        right: KsqlEntity[Any],
        *,
        on: str | tuple[str, str],
        join_type: JoinType | str = JoinType.INNER,
        within: Duration | None = None,
        name: str | None = None,
    ) -> KsqlStream[T]:
        """
        Stream joined from a stream and a stream (`within` required) or a table
        (CREATE STREAM ... AS SELECT ... JOIN). `on` names a column both sides
        share, or a `(left_column, right_column)` pair.
        """
        return self._joined(  # type: ignore[return-value]
            EntityKind.STREAM, record_type, left, right, on=on, join_type=join_type, within=within, name=name
        )

    def create_table_from_join(
        self,
        record_type: type[T],
        left: KsqlTable[Any],
        right: KsqlTable[Any],
        *,
        on: str | tuple[str, str],
        join_type: JoinType | str = JoinType.INNER,
        name: str | None = None,
    ) -> KsqlTable[T]:
        """Table joined from two tables (CREATE TABLE ... AS SELECT ... JOIN)."""
        return self._joined(  # type: ignore[return-value]
            EntityKind.TABLE, record_type, left, right, on=on, join_type=join_type, within=None, name=name
        )

    def _joined(
        self,
        expected: EntityKind,
        record_type: type[T],
        left: KsqlEntity[Any],
        right: KsqlEntity[Any],
        *,
        on: str | tuple[str, str],
        join_type: JoinType | str,
        within: Duration | None,
        name: str | None,
    ) -> KsqlEntity[T]:
        left_on, right_on = (on, on) if isinstance(on, str) else on
        join_type = JoinType(join_type)
        within_ms = duration_ms(within, "join window") if within is not None else None
        entity = record_type.__name__
        kind = StatementBuilder.join_result_kind(left.kind, right.kind, join_type, within_ms, entity=entity)
        if kind is not expected:
            raise InvalidJoin(
                f"{entity}: joining a {left.kind.value} with a {right.kind.value} yields a {kind.value}", entity=entity
            )
        derivation = JoinDerivation(
            left=left, right=right, left_on=left_on, right_on=right_on, join_type=join_type, within_ms=within_ms
        )
        cls: type[KsqlEntity[Any]] = KsqlStream if kind is EntityKind.STREAM else KsqlTable
        return cls(
            self._deps,
            self.registry.describe_derived(record_type, name=name),
            policy=self.options.error_policy(),
            derivation=derivation,
        )

    def table_builder(self, record_type: type[T]) -> TableBuilder[T]:
        return TableBuilder(self, record_type)


class TableBuilder(Generic[T]):
    """
    Fluent form of `KsqlContext.create_table_from`:

        ctx.table_builder(OrderTotals).from_stream(orders).window(w).aggregate(...).build()
    """

    def __init__(self, ctx: KsqlContext, record_type: type[T]) -> None:
        self._ctx = ctx
        self._record_type = record_type
        self._source: KsqlEntity[Any] | None = None
        self._windows: list[WindowSpec] = []
        self._group_by: list[str] = []
        self._aggregations: list[Aggregation] | None = None
        self._name: str | None = None

    def from_stream(self, source: KsqlEntity[Any]) -> TableBuilder[T]:
        self._source = source
        return self

    def window(self, window: WindowSpec) -> TableBuilder[T]:
        self._windows.append(window)
        return self

    def group_by(self, *columns: str) -> TableBuilder[T]:
        self._group_by.extend(columns)
        return self

    def aggregate(self, *aggregations: Aggregation) -> TableBuilder[T]:
        self._aggregations = [*(self._aggregations or []), *aggregations]
        return self

    def named(self, name: str) -> TableBuilder[T]:
        self._name = name
        return self

    def build(self) -> KsqlTable[T]:
        if self._source is None:
            raise ValueError("from_stream() must be called before build()")
        return self._ctx.create_table_from(
            self._record_type,
            self._source,
            window=self._windows,
            aggregations=self._aggregations,
            group_by=self._group_by or None,
            name=self._name,
        )
