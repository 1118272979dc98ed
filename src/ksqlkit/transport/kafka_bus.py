# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Kafka-backed implementation of the transport bus using aiokafka.

Features:
- raw bytes in both directions (no serializers configured on the clients)
- one idempotent producer per bus, shared by every handle of a context
- a fresh consumer per `new_consumer()` call; the bus tracks live consumers so
  `stop()` can release them all

This module stays config-agnostic: callers pass bootstrap and then create
topic/group-bound consumers as needed.
"""

import logging
from collections.abc import AsyncIterator, Mapping

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer

from ..core.log import get_logger, swallow
from .bus import Bus, Consumer, Received


class _KafkaConsumerWrapper(Consumer):
    """
    Thin adapter over AIOKafkaConsumer yielding `Received`.
    """

    def __init__(self, inner: AIOKafkaConsumer, *, log, on_stop=None) -> None:
        self._c = inner
        self._log = log
        self._on_stop = on_stop
        self._stopped = False

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        with swallow(
            logger=self._log,
            code="bus.kafka.consumer.stop",
            msg="consumer stop failed",
            level=logging.WARNING,
        ):
            await self._c.stop()
        if self._on_stop is not None:
            self._on_stop(self)

    def __aiter__(self) -> AsyncIterator[Received]:
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[Received]:
        async for rec in self._c:
            # aiokafka exposes headers as a sequence of (str, bytes)
            headers: Mapping[str, bytes] | None = None
            if rec.headers:
                headers = {k: v for (k, v) in rec.headers if isinstance(k, str)}
            yield Received(
                topic=rec.topic,
                partition=rec.partition,
                offset=rec.offset,
                key=rec.key,
                value=rec.value,
                timestamp_ms=rec.timestamp,
                headers=headers,
            )


class KafkaBus(Bus):
    """
    A minimal Kafka bus wrapper with an idempotent producer and a consumer factory.
    """

    def __init__(self, bootstrap: str, *, client_id: str = "ksqlkit") -> None:
        self.bootstrap = bootstrap
        self.client_id = client_id
        self._producer: AIOKafkaProducer | None = None
        self._consumers: list[_KafkaConsumerWrapper] = []

        self.log = get_logger("transport.kafka")

    # ---- lifecycle

    async def start(self) -> None:
        if self._producer is not None:
            return
        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap,
            client_id=self.client_id,
            enable_idempotence=True,
        )
        await producer.start()
        self._producer = producer
        self.log.debug("kafka bus started", bootstrap=self.bootstrap)

    async def stop(self) -> None:
        # consumers first, then the producer
        for cw in list(self._consumers):
            await cw.stop()
        self._consumers.clear()
        if self._producer:
            with swallow(
                logger=self.log,
                code="bus.kafka.producer.stop",
                msg="producer stop failed",
                level=logging.WARNING,
            ):
                await self._producer.stop()
        self._producer = None

    @property
    def open_consumers(self) -> int:
        return len(self._consumers)

    # ---- consumer factory

    async def new_consumer(
        self,
        topics: list[str],
        group_id: str,
        *,
        auto_offset_reset: str = "earliest",
    ) -> Consumer:
        c = AIOKafkaConsumer(
            *topics,
            bootstrap_servers=self.bootstrap,
            client_id=self.client_id,
            group_id=group_id,
            enable_auto_commit=True,
            auto_offset_reset=auto_offset_reset,
        )
        await c.start()
        wrapper = _KafkaConsumerWrapper(c, log=self.log, on_stop=self._forget)
        self._consumers.append(wrapper)
        self.log.debug("consumer started", topics=topics, group_id=group_id)
        return wrapper

    def _forget(self, wrapper: _KafkaConsumerWrapper) -> None:
        if wrapper in self._consumers:
            self._consumers.remove(wrapper)

    # ---- send

    async def send(
        self,
        topic: str,
        key: bytes | None,
        value: bytes | None,
        *,
        headers: Mapping[str, bytes] | None = None,
    ) -> None:
        """Send raw bytes and wait for the broker acknowledgement."""
        if self._producer is None:
            raise RuntimeError("KafkaBus producer is not initialized; call start() first")
        await self._producer.send_and_wait(
            topic,
            value,
            key=key,
            headers=list(headers.items()) if headers else None,
        )
