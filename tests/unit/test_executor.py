from __future__ import annotations

from decimal import Decimal

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from ksqlkit.errors import StatementExecutionError
from ksqlkit.runtime import serde
from ksqlkit.transport.executor import (
    KsqlRestExecutor,
    StatementResult,
    is_already_exists,
    parse_query_response,
    parse_schema_columns,
)
from tests.helpers.models import Order

pytestmark = [pytest.mark.unit]

QUERY_BODY = [
    {"header": {"queryId": "q1", "schema": "`ORDERID` STRING KEY, `AMOUNT` DECIMAL(18, 2), `TAGS` MAP<STRING, INT>"}},
    {"row": {"columns": ["o-1", 10.5, {"a": 1}]}},
    {"row": {"columns": ["o-2", 3.0, {}]}},
    {"finalMessage": "Limit Reached"},
]

BIG_DECIMAL_BODY = (
    '[{"header": {"queryId": "q2", "schema": "`ORDERID` STRING KEY, `AMOUNT` DECIMAL(18, 2)"}},'
    '{"row": {"columns": ["o-1", 1234567890123456.78]}}]'
)


def test_schema_columns_respect_nesting():
    assert parse_schema_columns(QUERY_BODY[0]["header"]["schema"]) == ["ORDERID", "AMOUNT", "TAGS"]
    assert parse_schema_columns("A INT, B STRUCT<X INT, Y ARRAY<STRING>>") == ["A", "B"]
    assert parse_schema_columns("") == []


def test_query_response_rows():
    assert parse_query_response(QUERY_BODY) == [
        {"ORDERID": "o-1", "AMOUNT": 10.5, "TAGS": {"a": 1}},
        {"ORDERID": "o-2", "AMOUNT": 3.0, "TAGS": {}},
    ]
    assert parse_query_response([QUERY_BODY[0]]) == []


def test_query_response_errors():
    with pytest.raises(StatementExecutionError) as ei:
        parse_query_response([QUERY_BODY[0], {"errorMessage": {"message": "boom"}}])
    assert ei.value.engine_message == "boom"
    with pytest.raises(StatementExecutionError):
        parse_query_response({"message": "not a list"})


def test_already_exists_detection():
    assert is_already_exists("Cannot add stream 'ORDERS': A stream with the same name already exists")
    assert not is_already_exists(None)
    assert not is_already_exists("line 1:8: mismatched input")
    assert StatementResult(ok=False, status_code=400, engine_message="Already Exists").already_exists
    assert not StatementResult(ok=True, status_code=200, engine_message="already exists").already_exists


# ---------------------------------------------------------------------------
# Against a local HTTP server
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine():
    seen: list[dict] = []

    async def ksql(request: web.Request) -> web.Response:
        body = await request.json()
        seen.append(body)
        if body["ksql"].startswith("CREATE STREAM orders"):
            return web.json_response(
                {"@type": "statement_error", "error_code": 40001, "message": "Stream ORDERS already exists"},
                status=400,
            )
        if body["ksql"].startswith("GARBAGE"):
            return web.json_response({"@type": "statement_error", "message": "line 1:1: mismatched input"}, status=400)
        return web.json_response([{"@type": "currentStatus", "commandStatus": {"status": "SUCCESS"}}])

    async def query(request: web.Request) -> web.Response:
        body = await request.json()
        seen.append(body)
        if "big" in body["ksql"]:
            return web.Response(text=BIG_DECIMAL_BODY, content_type="application/json")
        if "missing" in body["ksql"]:
            return web.json_response({"message": "Table MISSING does not exist"}, status=400)
        return web.json_response(QUERY_BODY)

    app = web.Application()
    app.router.add_post("/ksql", ksql)
    app.router.add_post("/query", query)
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        yield server, seen
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_execute_outcomes(engine):
    server, seen = engine
    async with KsqlRestExecutor(str(server.make_url("")), default_properties={"x": "1"}) as ex:
        ok = await ex.execute("CREATE TABLE t (K VARCHAR PRIMARY KEY) WITH (KAFKA_TOPIC='t', VALUE_FORMAT='JSON');")
        exists = await ex.execute("CREATE STREAM orders (OrderId VARCHAR KEY);")
        bad = await ex.execute("GARBAGE;", {"ksql.streams.auto.offset.reset": "latest"})

    assert ok.ok and ok.status_code == 200
    assert not exists.ok and exists.already_exists and exists.status_code == 400
    assert not bad.ok and not bad.already_exists and bad.engine_message == "line 1:1: mismatched input"

    assert seen[0]["streamsProperties"] == {"ksql.streams.auto.offset.reset": "earliest", "x": "1"}
    assert seen[2]["streamsProperties"]["ksql.streams.auto.offset.reset"] == "latest"


@pytest.mark.asyncio
async def test_query_rows_and_rejection(engine):
    server, _ = engine
    async with KsqlRestExecutor(str(server.make_url(""))) as ex:
        rows = await ex.query("SELECT * FROM orders;")
        with pytest.raises(StatementExecutionError) as ei:
            await ex.query("SELECT * FROM missing;")

    assert [r["ORDERID"] for r in rows] == ["o-1", "o-2"]
    assert ei.value.status_code == 400
    assert ei.value.engine_message == "Table MISSING does not exist"
    assert ei.value.statement == "SELECT * FROM missing;"


@pytest.mark.asyncio
async def test_unreachable_engine():
    # nothing listens on port 9 locally, so the connection is refused
    async with KsqlRestExecutor("http://127.0.0.1:9", timeout_ms=2_000) as ex:
        result = await ex.execute("DROP STREAM orders;")
        assert not result.ok and result.status_code is None
        assert result.engine_message.startswith("engine unreachable")
        with pytest.raises(StatementExecutionError) as ei:
            await ex.query("SELECT * FROM orders;")
    assert ei.value.status_code is None


@pytest.mark.asyncio
async def test_query_keeps_decimal_columns_exact(engine, registry):
    server, _ = engine
    async with KsqlRestExecutor(str(server.make_url(""))) as ex:
        rows = await ex.query("SELECT * FROM big;")
    assert rows == [{"ORDERID": "o-1", "AMOUNT": Decimal("1234567890123456.78")}]
    rec = serde.record_from_columns(registry.describe(Order), {**rows[0], "CUSTOMERID": "c-1", "ORDERTIME": 0})
    assert rec.amount == Decimal("1234567890123456.78")
