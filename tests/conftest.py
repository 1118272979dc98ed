# conftest.py
from __future__ import annotations

import os
import uuid

import pytest
import pytest_asyncio

from ksqlkit import KsqlContext, KsqlOptions
from ksqlkit.core.log import (
    bind_context,
    configure_from_env,
    enable_stdout_logging,
    get_logger,
    log_context,
)
from ksqlkit.core.time import ManualClock
from ksqlkit.schema.metadata import DescriptorRegistry
from tests.helpers import BROKER, FakeExecutor, install_inmemory_kafka


def pytest_addoption(parser):
    parser.addoption(
        "--log-json",
        action="store_true",
        default=False,
        help="Emit ksqlkit logs in JSON format during tests",
    )


@pytest.fixture(scope="session", autouse=True)
def _configure_ksqlkit_logging(request):
    configure_from_env()
    prefer_json = request.config.getoption("--log-json")
    # unless enabled explicitly through env, log human-readable output at DEBUG
    if os.getenv("KSQLKIT_LOG_STDOUT", "").lower() not in ("1", "true", "yes", "on"):
        enable_stdout_logging(
            level="DEBUG",
            json_output=prefer_json,
            pretty=not prefer_json,
            route_errors_to_stderr=True,
        )
    bind_context(role="pytest")


@pytest.fixture(scope="session")
def session_run_id():
    return uuid.uuid4().hex[:8]


@pytest.fixture(autouse=True)
def _test_log_context(request, session_run_id):
    log = get_logger("test")
    with log_context(test=request.node.name, test_run=session_run_id):
        log.debug("pytest.test.start", event="pytest.test.start")
        yield


@pytest.fixture
def kafka(monkeypatch):
    """In-memory broker with aiokafka clients patched out."""
    install_inmemory_kafka(monkeypatch)
    return BROKER


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def registry():
    return DescriptorRegistry()


@pytest.fixture
def clock():
    return ManualClock(start_ms=1_700_000_000_000)


@pytest.fixture
def options(request):
    m = request.node.get_closest_marker("options")
    overrides = dict(m.kwargs) if m else {}
    return KsqlOptions.load(overrides=overrides)


@pytest_asyncio.fixture
async def ctx(kafka, executor, registry, clock, options):
    c = KsqlContext(options, executor=executor, registry=registry, clock=clock)
    await c.start()
    try:
        yield c
    finally:
        await c.stop()


def pytest_configure(config):
    config.addinivalue_line("markers", "options(**overrides): per-test KsqlOptions overrides")
