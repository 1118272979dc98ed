"""
Table handles: pull queries, derived tables through the builder, drop.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from ksqlkit import Aggregation, HandleState, KsqlTable, TumblingWindow
from ksqlkit.errors import DeserializationError, HandleStateError, StatementExecutionError
from ksqlkit.transport.executor import StatementResult
from tests.helpers import take
from tests.helpers.models import Customer, CustomerTotals, LatestOrder, Order

pytestmark = [pytest.mark.runtime]

BY_KEY = "SELECT * FROM customers WHERE CustomerId = 'c-1';"


@pytest.mark.asyncio
async def test_handles_are_cached_per_kind(ctx):
    customers = ctx.table(Customer)
    assert isinstance(customers, KsqlTable)
    assert ctx.table(Customer) is customers
    assert ctx.stream(Customer) is not customers
    assert customers.create_statement.startswith("CREATE TABLE customers (CustomerId VARCHAR PRIMARY KEY")


@pytest.mark.asyncio
async def test_find_by_key(ctx, executor):
    customers = ctx.table(Customer)
    await customers.create()
    executor.rows[BY_KEY] = [{"CUSTOMERID": "c-1", "NAME": "Ann", "TIER": "gold"}]

    found = await customers.find("c-1")
    assert found == Customer(customer_id="c-1", name="Ann", tier="gold")
    assert await customers.find("c-2") is None
    assert executor.queries == [BY_KEY, "SELECT * FROM customers WHERE CustomerId = 'c-2';"]


@pytest.mark.asyncio
async def test_to_list_honours_limit(ctx, executor):
    customers = ctx.table(Customer)
    executor.rows["SELECT * FROM customers LIMIT 2;"] = [
        {"CUSTOMERID": "c-1", "NAME": "Ann", "TIER": None},
        {"CUSTOMERID": "c-2", "NAME": "Bob", "TIER": "gold"},
    ]
    rows = await customers.to_list(limit=2)
    assert [(c.customer_id, c.tier) for c in rows] == [("c-1", None), ("c-2", "gold")]
    assert await customers.to_list() == []
    with pytest.raises(ValueError):
        await customers.to_list(limit=0)


@pytest.mark.asyncio
async def test_malformed_row_raises(ctx, executor):
    customers = ctx.table(Customer)
    executor.rows[BY_KEY] = [{"CUSTOMERID": "c-1"}]
    with pytest.raises(DeserializationError) as ei:
        await customers.find("c-1")
    assert ei.value.raw == {"CUSTOMERID": "c-1"}


@pytest.mark.asyncio
async def test_pull_query_failure_propagates(ctx, executor):
    executor.unreachable = True
    with pytest.raises(StatementExecutionError):
        await ctx.table(Customer).to_list()


@pytest.mark.asyncio
async def test_table_insert_fills_defaults(ctx, kafka):
    customers = ctx.table(Customer)
    await customers.insert(Customer(customer_id="c-9", name="Zed"))
    async with customers.subscribe() as sub:
        (got,) = await take(sub, 1)
    assert got.tier == "basic"


@pytest.mark.asyncio
async def test_table_subscription_replays_changelog_in_order(ctx, kafka):
    customers = ctx.table(Customer)
    await customers.create()
    await customers.insert(Customer(customer_id="c-1", name="Ann"))
    await kafka.produce(customers.topic, b"{broken", key=b"c-1")
    await customers.insert(Customer(customer_id="c-1", name="Ann", tier="gold"))
    await customers.insert(Customer(customer_id="c-2", name="Bob"))

    async with customers.subscribe() as sub:
        got = await take(sub, 3)
    # every update of a key is delivered, not just the latest
    assert [(c.customer_id, c.tier) for c in got] == [("c-1", "basic"), ("c-1", "gold"), ("c-2", "basic")]
    assert customers.metrics.skipped.value == 1
    assert customers.metrics.snapshot()["delivered"] == 3
    assert customers.state is HandleState.ACTIVE


@pytest.mark.asyncio
async def test_builder_builds_windowed_table(ctx, executor):
    orders = ctx.stream(Order)
    totals = (
        ctx.table_builder(CustomerTotals)
        .from_stream(orders)
        .window(TumblingWindow(timedelta(minutes=5)))
        .aggregate(Aggregation.sum("Amount", "Total"))
        .aggregate(Aggregation.count("OrderCount"))
        .build()
    )
    assert totals.create_statement == (
        "CREATE TABLE customer_totals AS SELECT CustomerId, SUM(Amount) AS Total, COUNT(*) AS OrderCount "
        "FROM orders WINDOW TUMBLING (SIZE 5 MINUTES) GROUP BY CustomerId EMIT CHANGES;"
    )
    await totals.create()
    assert executor.creates() == [orders.create_statement, totals.create_statement]


@pytest.mark.asyncio
async def test_builder_named_latest_table(ctx, executor):
    latest = ctx.table_builder(LatestOrder).from_stream(ctx.stream(Order)).named("latest_orders").build()
    assert latest.name == "latest_orders"
    assert "LATEST_BY_OFFSET(OrderId) AS OrderId" in latest.create_statement

    executor.rows["SELECT * FROM latest_orders WHERE CustomerId = 'c-1';"] = [
        {"CUSTOMERID": "c-1", "ORDERID": "o-3", "AMOUNT": 12.5}
    ]
    row = await latest.find("c-1")
    assert row is not None and row.order_id == "o-3"


@pytest.mark.asyncio
async def test_explicit_name_wins_over_topic_declaration(ctx):
    vip = ctx.create_table_from(Customer, ctx.table(Customer), name="vip_customers")
    assert vip.name == "vip_customers"
    assert vip.create_statement.startswith("CREATE TABLE vip_customers AS SELECT CustomerId, ")
    assert "FROM customers GROUP BY CustomerId" in vip.create_statement


@pytest.mark.asyncio
async def test_builder_requires_a_source(ctx):
    with pytest.raises(ValueError):
        ctx.table_builder(CustomerTotals).build()


@pytest.mark.asyncio
async def test_drop_then_handle_is_unusable(ctx, executor):
    customers = ctx.table(Customer)
    await customers.create()
    await customers.drop()

    assert executor.executed[-1] == "DROP TABLE IF EXISTS customers DELETE TOPIC;"
    assert customers.state is HandleState.DROPPED
    with pytest.raises(HandleStateError):
        await customers.find("c-1")
    with pytest.raises(HandleStateError):
        await customers.drop()


@pytest.mark.asyncio
async def test_rejected_drop_keeps_the_handle(ctx, executor):
    customers = ctx.table(Customer)
    await customers.create()
    executor.fail_on["DROP TABLE"] = StatementResult(ok=False, status_code=400, engine_message="in use by query")
    with pytest.raises(StatementExecutionError) as ei:
        await customers.drop(delete_topic=False, if_exists=False)
    assert ei.value.statement == "DROP TABLE customers;"
    assert customers.state is HandleState.ACTIVE
