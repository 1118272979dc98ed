from __future__ import annotations

import base64

import pytest
from pydantic import ValidationError

from ksqlkit.errors import DeserializationError
from ksqlkit.runtime.error_policy import DeadLetterMessage, ErrorAction, ErrorPolicy, ErrorRouter
from ksqlkit.runtime.metrics import SubscriptionMetrics
from ksqlkit.transport.bus import Received

pytestmark = [pytest.mark.unit]


class _RecordingBus:
    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[tuple[str, bytes | None, bytes | None]] = []
        self.fail = fail

    async def start(self) -> None: ...
    async def stop(self) -> None: ...

    async def send(self, topic, key, value, *, headers=None) -> None:
        if self.fail:
            raise ConnectionError("dlq down")
        self.sent.append((topic, key, value))

    async def new_consumer(self, topics, group_id, *, auto_offset_reset="earliest"):
        raise NotImplementedError


def _msg(value: bytes = b"{not json") -> Received:
    return Received(topic="orders", partition=0, offset=4, key=b"o-4", value=value, timestamp_ms=1234)


def _err() -> DeserializationError:
    return DeserializationError("orders: payload is not valid JSON", entity="Order", topic="orders", offset=4)


def _always_fails(msg: Received):
    raise _err()


def test_policy_validation():
    assert ErrorPolicy().action is ErrorAction.SKIP
    assert ErrorPolicy().max_retries == 3
    with pytest.raises(ValidationError):
        ErrorPolicy(action=ErrorAction.DEAD_LETTER)
    with pytest.raises(ValidationError):
        ErrorPolicy(action=ErrorAction.SKIP, dead_letter_topic="dlq")
    with pytest.raises(ValidationError):
        ErrorPolicy(action=ErrorAction.RETRY, max_retries=-1)
    assert ErrorPolicy.dead_letter("dlq").dead_letter_topic == "dlq"


def test_policy_is_frozen():
    p = ErrorPolicy.skip()
    with pytest.raises(ValidationError):
        p.action = ErrorAction.STOP  # type: ignore[misc]


@pytest.mark.asyncio
async def test_skip_counts_and_drops():
    metrics = SubscriptionMetrics()
    router = ErrorRouter(ErrorPolicy.skip(), bus=_RecordingBus(), metrics=metrics, entity="Order")
    assert await router.handle(_msg(), _err(), _always_fails) is None
    assert metrics.skipped.value == 1 and metrics.decode_failures.value == 1


@pytest.mark.asyncio
async def test_stop_raises_the_decode_error():
    router = ErrorRouter(ErrorPolicy.stop(), bus=_RecordingBus(), metrics=SubscriptionMetrics(), entity="Order")
    err = _err()
    with pytest.raises(DeserializationError) as ei:
        await router.handle(_msg(), err, _always_fails)
    assert ei.value is err


@pytest.mark.asyncio
async def test_retry_is_bounded_then_skips():
    metrics = SubscriptionMetrics()
    calls = []

    def decode(msg):
        calls.append(msg)
        raise _err()

    router = ErrorRouter(ErrorPolicy.retry(2), bus=_RecordingBus(), metrics=metrics, entity="Order")
    assert await router.handle(_msg(), _err(), decode) is None
    assert len(calls) == 2
    assert metrics.retries.value == 2 and metrics.skipped.value == 1


@pytest.mark.asyncio
async def test_retry_returns_record_when_a_later_attempt_succeeds():
    attempts = iter([_err(), "decoded"])

    def decode(msg):
        nxt = next(attempts)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt

    router = ErrorRouter(ErrorPolicy.retry(3), bus=_RecordingBus(), metrics=SubscriptionMetrics(), entity="Order")
    assert await router.handle(_msg(), _err(), decode) == "decoded"


@pytest.mark.asyncio
async def test_dead_letter_publishes_raw_payload(clock):
    bus = _RecordingBus()
    metrics = SubscriptionMetrics()
    clock.advance(250)
    router = ErrorRouter(ErrorPolicy.dead_letter("orders.dlq"), bus=bus, metrics=metrics, entity="Order", clock=clock)
    raw = b"\xff\x00garbage"
    assert await router.handle(_msg(raw), _err(), _always_fails) is None

    assert len(bus.sent) == 1
    topic, key, value = bus.sent[0]
    assert topic == "orders.dlq" and key == b"o-4"
    env = DeadLetterMessage.model_validate_json(value)
    assert env.payload == raw
    assert env.payload_b64 == base64.b64encode(raw).decode()
    assert env.source_topic == "orders" and env.offset == 4 and env.partition == 0
    assert env.original_timestamp_ms == 1234
    assert env.error_type == "DeserializationError"
    assert "not valid JSON" in env.failure_reason
    assert env.dead_lettered_at_ms == 1_700_000_000_250
    assert metrics.dead_lettered.value == 1


@pytest.mark.asyncio
async def test_dead_letter_publish_failure_is_not_fatal(caplog):
    metrics = SubscriptionMetrics()
    router = ErrorRouter(
        ErrorPolicy.dead_letter("orders.dlq"), bus=_RecordingBus(fail=True), metrics=metrics, entity="Order"
    )
    caplog.set_level("ERROR")
    assert await router.handle(_msg(), _err(), _always_fails) is None
    assert metrics.dead_letter_failures.value == 1
    assert metrics.dead_lettered.value == 0
    assert any("dead-letter publish failed" in r.getMessage() for r in caplog.records)
