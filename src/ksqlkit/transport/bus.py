# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Transport abstraction over the message log underneath streams and tables.

This module defines:
- `Bus` protocol: lifecycle + raw send + consumer factory.
- `Consumer` protocol: async-iterable stream of `Received` messages.
- `Received`: raw payload bytes plus delivery metadata.

Payloads are kept as bytes on purpose: decoding happens in the runtime so a
payload that fails to decode can still be forwarded untouched to a dead-letter
topic.
"""

from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class Received:
    """
    A single message fetched from the bus.

    Attributes:
        topic: Source topic.
        partition: Zero-based partition index.
        offset: Offset within the partition.
        key: Raw message key, if any.
        value: Raw message value, exactly as stored.
        timestamp_ms: Broker/producer timestamp (epoch ms), if known.
        headers: Optional map of headers.
    """

    topic: str
    partition: int | None
    offset: int | None
    key: bytes | None
    value: bytes | None
    timestamp_ms: int | None = None
    headers: Mapping[str, bytes] | None = None


@runtime_checkable
class Consumer(Protocol):
    async def stop(self) -> None: ...
    def __aiter__(self) -> AsyncIterator[Received]: ...


@runtime_checkable
class Bus(Protocol):
    """
    Raw-bytes message bus.

    Implementations should provide idempotent `start()`/`stop()` and a consumer
    factory where every call yields an independent consumer.
    """

    async def start(self) -> None: ...
    async def stop(self) -> None: ...

    async def send(
        self,
        topic: str,
        key: bytes | None,
        value: bytes | None,
        *,
        headers: Mapping[str, bytes] | None = None,
    ) -> None: ...

    async def new_consumer(
        self,
        topics: list[str],
        group_id: str,
        *,
        auto_offset_reset: str = "earliest",
    ) -> Consumer: ...
