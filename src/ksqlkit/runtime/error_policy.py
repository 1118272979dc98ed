# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Per-record error routing for subscriptions.

A policy is decided once per handle and captured by every subscription when it
opens; rebinding a handle's policy never reaches a subscription already running.

Actions, applied to one raw message that failed to decode:

- SKIP         drop the message and keep going (counted)
- STOP         end the subscription with the DeserializationError
- RETRY        decode again up to `max_retries` times, then behave like SKIP
- DEAD_LETTER  publish the untouched payload plus failure metadata to the
               dead-letter topic, then behave like SKIP; a failed publish is
               logged and counted, never raised
"""

import base64
from collections.abc import Callable
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..core.log import get_logger
from ..core.time import Clock, SystemClock
from ..errors import DeserializationError
from ..transport.bus import Bus, Received
from .metrics import SubscriptionMetrics

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3


class ErrorAction(str, Enum):
    SKIP = "skip"
    STOP = "stop"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


class ErrorPolicy(BaseModel):
    """Frozen; share freely between subscriptions."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    action: ErrorAction = ErrorAction.SKIP
    dead_letter_topic: str | None = None
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)

    @model_validator(mode="after")
    def _check_dead_letter_topic(self) -> ErrorPolicy:
        if self.action is ErrorAction.DEAD_LETTER and not self.dead_letter_topic:
            raise ValueError("dead_letter_topic is required when action is dead_letter")
        if self.action is not ErrorAction.DEAD_LETTER and self.dead_letter_topic:
            raise ValueError("dead_letter_topic is only valid with action dead_letter")
        return self

    @classmethod
    def skip(cls) -> ErrorPolicy:
        return cls(action=ErrorAction.SKIP)

    @classmethod
    def stop(cls) -> ErrorPolicy:
        return cls(action=ErrorAction.STOP)

    @classmethod
    def retry(cls, max_retries: int = DEFAULT_MAX_RETRIES) -> ErrorPolicy:
        return cls(action=ErrorAction.RETRY, max_retries=max_retries)

    @classmethod
    def dead_letter(cls, topic: str) -> ErrorPolicy:
        return cls(action=ErrorAction.DEAD_LETTER, dead_letter_topic=topic)


class DeadLetterMessage(BaseModel):
    """Envelope published to the dead-letter topic. The payload is base64 of the raw value bytes."""

    model_config = ConfigDict(extra="forbid")

    payload_b64: str | None
    source_topic: str
    partition: int | None = None
    offset: int | None = None
    original_timestamp_ms: int | None = None
    failure_reason: str
    error_type: str
    entity: str | None = None
    dead_lettered_at_ms: int

    @classmethod
    def from_failure(
        cls, msg: Received, error: BaseException, *, entity: str | None, now_ms: int
    ) -> DeadLetterMessage:
        return cls(
            payload_b64=base64.b64encode(msg.value).decode("ascii") if msg.value is not None else None,
            source_topic=msg.topic,
            partition=msg.partition,
            offset=msg.offset,
            original_timestamp_ms=msg.timestamp_ms,
            failure_reason=str(error),
            error_type=type(error).__name__,
            entity=entity,
            dead_lettered_at_ms=now_ms,
        )

    @property
    def payload(self) -> bytes | None:
        return base64.b64decode(self.payload_b64) if self.payload_b64 is not None else None


class ErrorRouter(Generic[T]):
    """
    Applies one captured policy to decode failures of one subscription.

    `handle()` returns the record when a retry succeeds, None when the message is
    dropped (skip, exhausted retries, dead-lettered), and raises under STOP.
    """

    def __init__(
        self,
        policy: ErrorPolicy,
        *,
        bus: Bus,
        metrics: SubscriptionMetrics,
        entity: str,
        clock: Clock | None = None,
    ) -> None:
        self.policy = policy
        self.bus = bus
        self.metrics = metrics
        self.entity = entity
        self.clock = clock or SystemClock()
        self.log = get_logger("runtime.errors")

    async def handle(
        self, msg: Received, error: DeserializationError, decode: Callable[[Received], T]
    ) -> T | None:
        self.metrics.decode_failures.inc()
        action = self.policy.action
        fields: dict[str, Any] = {
            "entity": self.entity,
            "topic": msg.topic,
            "partition": msg.partition,
            "offset": msg.offset,
        }

        if action is ErrorAction.STOP:
            self.log.error("decode failed, stopping subscription", error=str(error), **fields)
            raise error

        if action is ErrorAction.RETRY:
            for attempt in range(1, self.policy.max_retries + 1):
                self.metrics.retries.inc()
                try:
                    return decode(msg)
                except DeserializationError as e:
                    error = e
                    self.log.debug("decode retry failed", attempt=attempt, **fields)
            self.log.warning("decode retries exhausted, skipping", retries=self.policy.max_retries, **fields)

        elif action is ErrorAction.DEAD_LETTER:
            await self._dead_letter(msg, error, fields)
            return None

        else:
            self.log.warning("decode failed, skipping", error=str(error), **fields)

        self.metrics.skipped.inc()
        return None

    async def _dead_letter(self, msg: Received, error: DeserializationError, fields: dict[str, Any]) -> None:
        topic = self.policy.dead_letter_topic
        assert topic is not None
        envelope = DeadLetterMessage.from_failure(msg, error, entity=self.entity, now_ms=self.clock.now_ms())
        try:
            await self.bus.send(topic, msg.key, envelope.model_dump_json().encode("utf-8"))
        except Exception as e:  # noqa: BLE001
            self.metrics.dead_letter_failures.inc()
            self.log.error("dead-letter publish failed", dead_letter_topic=topic, error=str(e), **fields)
            return
        self.metrics.dead_lettered.inc()
        self.log.info("message dead-lettered", dead_letter_topic=topic, **fields)
