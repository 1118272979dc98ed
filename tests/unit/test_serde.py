from __future__ import annotations

import json
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Annotated

import pytest
from pydantic import Field

from ksqlkit.core.utils import dumps, loads
from ksqlkit.errors import DeserializationError, SerializationError
from ksqlkit.runtime import serde
from ksqlkit.schema.metadata import Key, KsqlRecord, topic
from ksqlkit.schema.statements import ValueFormat
from ksqlkit.transport.bus import Received
from tests.helpers.models import Customer, Order, Shipment, order

pytestmark = [pytest.mark.unit]


def _received(value: bytes | None, key: bytes | None = b"o-1", *, topic_name: str = "orders") -> Received:
    return Received(topic=topic_name, partition=2, offset=17, key=key, value=value)


def test_encode_order(registry):
    desc = registry.describe(Order)
    key, value = serde.encode(desc, order(1), ValueFormat.JSON)
    assert key == b"o-1"
    body = json.loads(value)
    assert body == {
        "OrderId": "o-1",
        "CustomerId": "c-1",
        "Amount": 10.5,
        "OrderTime": int(datetime(2024, 1, 1, 12, 0, 1, tzinfo=timezone.utc).timestamp() * 1000),
    }


def test_decode_is_inverse_of_encode(registry):
    desc = registry.describe(Order)
    src = order(3)
    key, value = serde.encode(desc, src, ValueFormat.JSON)
    out = serde.decode(desc, _received(value, key))
    assert out.model_dump() == src.model_dump()
    assert out.order_time.tzinfo is not None


def test_naive_datetime_is_treated_as_utc(registry):
    desc = registry.describe(Order)
    naive = order(0).model_copy(update={"order_time": datetime(2024, 1, 1)})
    _, value = serde.encode(desc, naive, ValueFormat.JSON)
    assert json.loads(value)["OrderTime"] == 1_704_067_200_000


def test_composite_key_joins_in_key_order(registry):
    desc = registry.describe(Shipment)
    key, _ = serde.encode(desc, Shipment(region="eu", shipment_id=7, weight=1.25), ValueFormat.JSON)
    assert key == b"7|eu"


def test_defaults_filled_on_encode(registry):
    desc = registry.describe(Customer)
    _, value = serde.encode(desc, Customer(customer_id="c-1", name="Ann"), ValueFormat.JSON)
    assert json.loads(value)["Tier"] == "basic"


def test_null_key_rejected(registry):
    @topic("maybe")
    class Maybe(KsqlRecord):
        id: Annotated[str | None, Key()] = None

    with pytest.raises(SerializationError) as ei:
        serde.encode(registry.describe(Maybe), Maybe(), ValueFormat.JSON)
    assert ei.value.field == "id"


@pytest.mark.parametrize("amount", ["1.234", "12345678901234567.00"])
def test_decimal_that_does_not_fit_is_rejected(registry, amount):
    with pytest.raises(SerializationError):
        serde.encode(registry.describe(Order), order(1, amount=amount), ValueFormat.JSON)


def test_decimal_within_precision_is_accepted(registry):
    _, value = serde.encode(registry.describe(Order), order(1, amount="9999999999999999.99"), ValueFormat.JSON)
    assert "Amount" in json.loads(value)


def test_wrong_record_type_rejected(registry):
    with pytest.raises(SerializationError):
        serde.encode(registry.describe(Order), Customer(customer_id="c", name="n"), ValueFormat.JSON)


@pytest.mark.parametrize("fmt", [ValueFormat.AVRO, ValueFormat.PROTOBUF])
def test_schema_formats_are_not_writable(registry, fmt):
    with pytest.raises(SerializationError):
        serde.encode(registry.describe(Order), order(1), fmt)


def test_wire_conventions():
    assert serde.to_wire(date(1970, 1, 11)) == 10
    assert serde.to_wire(time(0, 0, 1, 500_000)) == 1500
    assert serde.to_wire(b"\x00\x01") == "AAE="
    assert serde.to_wire(Decimal("1.50")) == Decimal("1.50")
    assert serde.to_wire(1.5) == 1.5
    with pytest.raises(TypeError):
        serde.to_wire(object())


def test_decode_matches_columns_case_insensitively(registry):
    desc = registry.describe(Order)
    payload = {"ORDERID": "o-9", "CUSTOMERID": "c-2", "AMOUNT": 3.5, "ORDERTIME": 0}
    out = serde.decode(desc, _received(json.dumps(payload).encode(), b"o-9"))
    assert out.customer_id == "c-2"
    assert out.order_time == datetime(1970, 1, 1, tzinfo=timezone.utc)


def test_decode_fills_key_columns_from_message_key(registry):
    desc = registry.describe(Shipment)
    msg = _received(b'{"Weight": 2.0}', b"7|eu", topic_name="shipments")
    out = serde.decode(desc, msg)
    assert (out.shipment_id, out.region, out.weight) == (7, "eu", 2.0)


def test_record_from_columns_decodes_wire_types(registry):
    @topic("blobs")
    class Blob(KsqlRecord):
        id: Annotated[str, Key()]
        data: bytes
        day: date
        at: time
        label: str | None = Field(default=None)

    rec = serde.record_from_columns(registry.describe(Blob), {"ID": "b", "DATA": "AAE=", "DAY": 10, "AT": 1500})
    assert rec.data == b"\x00\x01"
    assert rec.day == date(1970, 1, 11)
    assert rec.at == time(0, 0, 1, 500_000)
    assert rec.label is None


@pytest.mark.parametrize(
    "value, reason",
    [
        (None, "tombstone"),
        (b"{not json", "not valid JSON"),
        (b"\xff\xfe", "not valid JSON"),
        (b"[1, 2]", "JSON object"),
        (b'{"CustomerId": "c", "Amount": "lots", "OrderTime": 0}', "does not match"),
    ],
)
def test_decode_failures_carry_message_coordinates(registry, value, reason):
    with pytest.raises(DeserializationError) as ei:
        serde.decode(registry.describe(Order), _received(value))
    err = ei.value
    assert reason in str(err)
    assert (err.topic, err.partition, err.offset) == ("orders", 2, 17)
    assert err.raw == value
    assert err.entity == "Order"


def test_decimal_is_written_and_read_exactly(registry):
    desc = registry.describe(Order)
    src = order(1, amount="1234567890123456.78")
    key, value = serde.encode(desc, src, ValueFormat.JSON)
    assert b'"Amount":1234567890123456.78' in value
    out = serde.decode(desc, _received(value, key))
    assert out.amount == Decimal("1234567890123456.78")


def test_fractional_numbers_still_decode_into_float_fields(registry):
    out = serde.decode(registry.describe(Shipment), _received(b'{"Weight": 0.1}', b"7|eu", topic_name="shipments"))
    assert isinstance(out.weight, float) and out.weight == 0.1


def test_json_helpers_keep_decimal_text():
    assert dumps({"a": Decimal("1E+2"), "b": [Decimal("-0.10")], "c": 0.5}) == b'{"a":100,"b":[-0.10],"c":0.5}'
    assert loads(b'{"a": 0.10, "n": 3}') == {"a": Decimal("0.10"), "n": 3}
    with pytest.raises(ValueError):
        dumps(Decimal("NaN"))
