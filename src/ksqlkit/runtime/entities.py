# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Typed stream/table handles.

Handles are created by a `KsqlContext` and share its executor, bus and create
catalog. Each handle follows one lifecycle:

    DECLARED -> CREATING -> ACTIVE <-> ERRORING
                CREATING -> FAILED
    (any) -> DROPPED after drop()

A FAILED handle re-raises its failure as `HandleStateError`; build a new handle
(from a new context) to try again.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel

from ..core.log import get_logger, log_context
from ..core.time import Clock, SystemClock
from ..core.utils import short_id
from ..errors import DeserializationError, HandleStateError, StatementExecutionError
from ..schema.metadata import EntityDescriptor
from ..schema.statements import Aggregation, EntityKind, JoinType, StatementBuilder, ValueFormat
from ..schema.windows import WindowSpec
from ..transport.bus import Bus, Received
from ..transport.executor import StatementExecutor
from . import serde
from .catalog import CreateCatalog
from .error_policy import ErrorAction, ErrorPolicy
from .metrics import KsqlMetrics
from .subscription import Subscription

T = TypeVar("T", bound=BaseModel)


class HandleState(str, Enum):
    DECLARED = "declared"
    CREATING = "creating"
    ACTIVE = "active"
    ERRORING = "erroring"
    FAILED = "failed"
    DROPPED = "dropped"


@dataclass
class RuntimeDeps:
    """Collaborators shared by every handle of one context."""

    executor: StatementExecutor
    bus: Bus
    catalog: CreateCatalog
    builder: StatementBuilder
    value_format: ValueFormat = ValueFormat.JSON
    properties: dict[str, str] = field(default_factory=dict)
    auto_offset_reset: str = "earliest"
    consumer_group_prefix: str = "ksqlkit"
    dead_letter_topic: str | None = None
    clock: Clock = field(default_factory=SystemClock)
    metrics: KsqlMetrics = field(default_factory=KsqlMetrics)


@dataclass(frozen=True)
class Derivation:
    """Lineage of a derived table."""

    source: KsqlEntity[Any]
    windows: tuple[WindowSpec, ...] = ()
    group_by: tuple[str, ...] = ()
    aggregations: tuple[Aggregation, ...] | None = None

    @property
    def sources(self) -> tuple[KsqlEntity[Any], ...]:
        return (self.source,)


@dataclass(frozen=True)
class JoinDerivation:
    """Lineage of a joined stream or table: `left [type] JOIN right ON left_on = right_on`."""

    left: KsqlEntity[Any]
    right: KsqlEntity[Any]
    left_on: str
    right_on: str
    join_type: JoinType = JoinType.INNER
    within_ms: int | None = None

    @property
    def sources(self) -> tuple[KsqlEntity[Any], ...]:
        return (self.left, self.right)


class KsqlEntity(Generic[T]):
    """Shared behaviour of streams and tables."""

    kind: ClassVar[EntityKind]

    def __init__(
        self,
        deps: RuntimeDeps,
        descriptor: EntityDescriptor,
        *,
        policy: ErrorPolicy,
        derivation: Derivation | JoinDerivation | None = None,
    ) -> None:
        self._deps = deps
        self.descriptor = descriptor
        self.derivation = derivation
        self._policy = policy
        self._state = HandleState.DECLARED
        self._failure: BaseException | None = None
        self.metrics = deps.metrics.for_entity(descriptor.entity_name, self.kind.value, descriptor.topic_name)
        self.log = get_logger(f"runtime.{self.kind.value.lower()}")
        # declaration errors surface here, not at the first create()
        self._create_statement = self._render_create()

    # ---- introspection

    @property
    def name(self) -> str:
        return self.descriptor.topic_name

    @property
    def topic(self) -> str:
        return self.descriptor.topic_name

    @property
    def entity_name(self) -> str:
        return self.descriptor.entity_name

    @property
    def record_type(self) -> type[T]:
        return self.descriptor.record_type  # type: ignore[return-value]

    @property
    def state(self) -> HandleState:
        return self._state

    @property
    def error_policy(self) -> ErrorPolicy:
        return self._policy

    @property
    def create_statement(self) -> str:
        return self._create_statement

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.entity_name!r}, topic={self.topic!r}, state={self._state.value})"

    # ---- lifecycle

    def _render_create(self) -> str:
        d = self.derivation
        if isinstance(d, JoinDerivation):
            return self._deps.builder.create_as_join(
                self.descriptor,
                d.left.descriptor,
                d.right.descriptor,
                left_kind=d.left.kind,
                right_kind=d.right.kind,
                left_on=d.left_on,
                right_on=d.right_on,
                join_type=d.join_type,
                within_ms=d.within_ms,
            )
        return self._deps.builder.create(self.kind, self.descriptor)

    def _check_usable(self) -> None:
        if self._state is HandleState.FAILED:
            raise HandleStateError(f"{self.entity_name} ({self.topic}) failed to create: {self._failure}") from self._failure
        if self._state is HandleState.DROPPED:
            raise HandleStateError(f"{self.entity_name} ({self.topic}) was dropped")

    async def _create_dependencies(self) -> None:
        if self.derivation is not None:
            for source in self.derivation.sources:
                await source.create()

    async def create(self) -> None:
        """Create the entity in the engine; at most once per context, "already exists" counts as success."""
        self._check_usable()
        if self._state in (HandleState.ACTIVE, HandleState.ERRORING):
            return
        self._state = HandleState.CREATING
        with log_context(entity=self.entity_name, topic=self.topic):
            try:
                await self._create_dependencies()
                await self._deps.catalog.ensure(self._create_statement, entity=self.entity_name)
            except (StatementExecutionError, HandleStateError) as e:
                self._state = HandleState.FAILED
                self._failure = e
                self.log.error("create failed", error=str(e))
                raise
        self._state = HandleState.ACTIVE

    async def drop(self, *, delete_topic: bool = True, if_exists: bool = True) -> None:
        self._check_usable()
        stmt = self._deps.builder.drop(self.kind, self.topic, delete_topic=delete_topic, if_exists=if_exists)
        result = await self._deps.executor.execute(stmt, self._deps.properties)
        if not result.ok:
            raise StatementExecutionError(
                f"drop failed for {self.entity_name}",
                status_code=result.status_code,
                engine_message=result.engine_message,
                entity=self.entity_name,
                statement=stmt,
            )
        self._deps.catalog.forget(self._create_statement)
        self._state = HandleState.DROPPED
        self.log.info("entity dropped", entity=self.entity_name, topic=self.topic, delete_topic=delete_topic)

    # ---- error policy

    def on_error(
        self,
        action: ErrorAction | str | ErrorPolicy,
        *,
        dead_letter_topic: str | None = None,
        max_retries: int | None = None,
    ) -> KsqlEntity[T]:
        """
        Replace the policy used by subscriptions opened from now on.

        Open subscriptions keep the policy they captured. With DEAD_LETTER and no
        topic given, the context's default dead-letter topic is used.
        """
        if isinstance(action, ErrorPolicy):
            self._policy = action
            return self
        act = ErrorAction(action)
        topic = None
        if act is ErrorAction.DEAD_LETTER:
            topic = dead_letter_topic or self._deps.dead_letter_topic
        self._policy = ErrorPolicy(
            action=act,
            dead_letter_topic=topic,
            max_retries=self._policy.max_retries if max_retries is None else max_retries,
        )
        return self

    # ---- state hooks used by subscriptions

    def _mark_erroring(self) -> None:
        if self._state is HandleState.ACTIVE:
            self._state = HandleState.ERRORING

    def _mark_recovered(self) -> None:
        if self._state is HandleState.ERRORING:
            self._state = HandleState.ACTIVE

    # ---- data plane

    def _decode(self, msg: Received) -> T:
        return serde.decode(self.descriptor, msg)  # type: ignore[return-value]

    async def insert(self, record: T) -> None:
        """Serialize `record` and publish it to the entity's topic."""
        self._check_usable()
        key, value = serde.encode(self.descriptor, record, self._deps.value_format)
        await self._deps.bus.send(self.topic, key, value)
        self.log.debug("record inserted", entity=self.entity_name, topic=self.topic)

    async def insert_many(self, records: Iterable[T]) -> int:
        """
        Publish `records` in order. Every record is encoded before the first send,
        so a record that cannot be encoded means nothing is published.
        Returns the number of records sent.
        """
        self._check_usable()
        encoded = [serde.encode(self.descriptor, r, self._deps.value_format) for r in records]
        for key, value in encoded:
            await self._deps.bus.send(self.topic, key, value)
        self.log.debug("records inserted", entity=self.entity_name, topic=self.topic, count=len(encoded))
        return len(encoded)

    def subscribe(self, *, group_id: str | None = None) -> Subscription[T]:
        """
        A fresh sequence over the topic. The error policy in force right now is
        captured by the subscription.
        """
        self._check_usable()
        return Subscription(
            topic=self.topic,
            entity=self.entity_name,
            decode=self._decode,
            policy=self._policy,
            bus=self._deps.bus,
            group_id=group_id or f"{self._deps.consumer_group_prefix}-{self.topic}-{short_id()}",
            auto_offset_reset=self._deps.auto_offset_reset,
            metrics=self.metrics,
            clock=self._deps.clock,
            on_failure=self._mark_erroring,
            on_recovered=self._mark_recovered,
        )

    def _rows_to_records(self, rows: Sequence[dict[str, Any]]) -> list[T]:
        out: list[T] = []
        for row in rows:
            try:
                out.append(serde.record_from_columns(self.descriptor, row))  # type: ignore[arg-type]
            except ValueError as e:
                raise DeserializationError(
                    f"{self.entity_name}: pull query row does not match: {e}",
                    entity=self.entity_name,
                    topic=self.topic,
                    raw=row,
                ) from e
        return out

    async def to_list(self, limit: int | None = None) -> list[T]:
        """Bounded pull query: current contents, in engine order."""
        self._check_usable()
        stmt = self._deps.builder.select_all(self.topic, limit=limit)
        rows = await self._deps.executor.query(stmt, self._deps.properties)
        return self._rows_to_records(rows)


class KsqlStream(KsqlEntity[T]):
    kind = EntityKind.STREAM


class KsqlTable(KsqlEntity[T]):
    kind = EntityKind.TABLE

    def _render_create(self) -> str:
        d = self.derivation
        if not isinstance(d, Derivation):
            return super()._render_create()
        return self._deps.builder.create_table_as(
            self.descriptor,
            d.source.descriptor,
            windows=d.windows,
            group_by=d.group_by,
            aggregations=d.aggregations,
        )

    async def find(self, *key: Any) -> T | None:
        """Pull query by key; None when no row matches."""
        self._check_usable()
        stmt = self._deps.builder.select_by_key(self.descriptor, key)
        rows = await self._deps.executor.query(stmt, self._deps.properties)
        records = self._rows_to_records(rows)
        return records[0] if records else None
