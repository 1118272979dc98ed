# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Continuous subscriptions over a stream/table topic.

A `Subscription` is an async iterator of typed records backed by its own Kafka
consumer (fresh group id, so every `subscribe()` starts its own sequence). The
consumer is opened lazily on the first `__anext__()` or on `__aenter__()` and
released on exhaustion, on `close()`, on a STOP failure and on cancellation.

    async with orders.subscribe() as sub:
        async for order in sub:
            ...
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from ..core.log import get_logger, log_context
from ..errors import DeserializationError
from ..transport.bus import Bus, Consumer, Received
from .error_policy import ErrorPolicy, ErrorRouter
from .metrics import SubscriptionMetrics

if TYPE_CHECKING:
    from ..core.time import Clock

T = TypeVar("T")


class Subscription(Generic[T]):
    def __init__(
        self,
        *,
        topic: str,
        entity: str,
        decode: Callable[[Received], T],
        policy: ErrorPolicy,
        bus: Bus,
        group_id: str,
        auto_offset_reset: str = "earliest",
        metrics: SubscriptionMetrics | None = None,
        clock: Clock | None = None,
        on_failure: Callable[[], Any] | None = None,
        on_recovered: Callable[[], Any] | None = None,
    ) -> None:
        self.topic = topic
        self.entity = entity
        self.group_id = group_id
        self.auto_offset_reset = auto_offset_reset
        self.metrics = metrics or SubscriptionMetrics()
        self._decode = decode
        self._bus = bus
        self._router: ErrorRouter[T] = ErrorRouter(
            policy, bus=bus, metrics=self.metrics, entity=entity, clock=clock
        )
        self._on_failure = on_failure
        self._on_recovered = on_recovered
        self._consumer: Consumer | None = None
        self._it: AsyncIterator[Received] | None = None
        self._closed = False
        self.log = get_logger("runtime.subscription")

    @property
    def policy(self) -> ErrorPolicy:
        return self._router.policy

    @property
    def closed(self) -> bool:
        return self._closed

    # ---- lifecycle

    async def open(self) -> None:
        if self._closed:
            raise RuntimeError("subscription is closed; call subscribe() again for a new sequence")
        if self._consumer is not None:
            return
        self._consumer = await self._bus.new_consumer(
            [self.topic], self.group_id, auto_offset_reset=self.auto_offset_reset
        )
        self._it = self._consumer.__aiter__()
        self.log.debug("subscription opened", entity=self.entity, topic=self.topic, subscription=self.group_id)

    async def close(self) -> None:
        self._closed = True
        consumer, self._consumer, self._it = self._consumer, None, None
        if consumer is not None:
            await consumer.stop()
            self.log.debug("subscription closed", entity=self.entity, topic=self.topic, subscription=self.group_id)

    aclose = close

    async def __aenter__(self) -> Subscription[T]:
        await self.open()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ---- iteration

    def __aiter__(self) -> Subscription[T]:
        return self

    async def __anext__(self) -> T:
        if self._closed:
            raise StopAsyncIteration
        try:
            if self._it is None:
                await self.open()
            assert self._it is not None
            while True:
                msg = await self._it.__anext__()
                self.metrics.received.inc()
                record = await self._process(msg)
                if record is not None:
                    self.metrics.delivered.inc()
                    return record
        except (asyncio.CancelledError, Exception):
            # StopAsyncIteration, STOP failures, cancellation: release the consumer
            await self.close()
            raise

    async def _process(self, msg: Received) -> T | None:
        try:
            return self._decode(msg)
        except DeserializationError as e:
            if self._on_failure is not None:
                self._on_failure()
            try:
                with log_context(entity=self.entity, topic=msg.topic, subscription=self.group_id):
                    return await self._router.handle(msg, e, self._decode)
            finally:
                if self._on_recovered is not None:
                    self._on_recovered()
