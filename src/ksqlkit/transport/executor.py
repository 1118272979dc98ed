# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Statement executor: submits statement text to the engine's REST API.

Two endpoints are used:

- `POST /ksql`  for DDL (CREATE / DROP). The engine answers 200 with a list of
  command results, or 4xx/5xx with `{"@type": ..., "error_code": ..., "message": ...}`.
- `POST /query` for pull queries. The body is a JSON array: a `header` element
  carrying the column schema, then one `row` element per row, then optionally a
  `finalMessage`.

Bodies are parsed with fractional numbers as Decimal so DECIMAL columns keep
their exact value.

Both send `{"ksql": <text>, "streamsProperties": {...}}`; the streams properties
always carry `ksql.streams.auto.offset.reset=earliest` unless the caller overrides it.

`execute()` never raises on engine or network failures: it returns a
`StatementResult` with `ok=False` so the runtime can decide. `query()` raises
`StatementExecutionError` because there is no partial answer to hand back.
"""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import aiohttp

from ..core.log import get_logger, swallow
from ..core.types import AUTO_OFFSET_RESET_PROP
from ..core.utils import loads
from ..errors import StatementExecutionError

__all__ = [
    "KsqlRestExecutor",
    "StatementExecutor",
    "StatementResult",
    "is_already_exists",
    "parse_query_response",
    "parse_schema_columns",
]

_ACCEPT = "application/vnd.ksql.v1+json"


def is_already_exists(message: str | None) -> bool:
    return bool(message) and "already exists" in message.lower()


@dataclass(frozen=True)
class StatementResult:
    ok: bool
    status_code: int | None
    engine_message: str | None = None
    body: Any = None

    @property
    def already_exists(self) -> bool:
        """True when the engine refused the statement only because the entity exists."""
        return not self.ok and is_already_exists(self.engine_message)


@runtime_checkable
class StatementExecutor(Protocol):
    async def execute(self, statement: str, properties: Mapping[str, str] | None = None) -> StatementResult: ...

    async def query(self, statement: str, properties: Mapping[str, str] | None = None) -> list[dict[str, Any]]: ...


def parse_schema_columns(schema: str) -> list[str]:
    """
    Column names from a header schema such as
    "`ORDERID` STRING KEY, `AMOUNT` DECIMAL(18, 2), `TAGS` MAP<STRING, STRING>".
    """
    cols: list[str] = []
    depth = 0
    start = 0
    for i, ch in enumerate(schema + ","):
        if ch in "(<":
            depth += 1
        elif ch in ")>":
            depth -= 1
        elif ch == "," and depth == 0:
            part = schema[start:i].strip()
            start = i + 1
            if not part:
                continue
            if part.startswith("`"):
                cols.append(part[1 : part.index("`", 1)])
            else:
                cols.append(part.split(" ", 1)[0])
    return cols


def parse_query_response(body: Any) -> list[dict[str, Any]]:
    """Turn a `/query` response array into a list of {column: value} rows."""
    if not isinstance(body, list):
        raise StatementExecutionError(f"unexpected pull query response: {type(body).__name__}")
    columns: list[str] = []
    rows: list[dict[str, Any]] = []
    for item in body:
        if not isinstance(item, Mapping):
            continue
        if "header" in item:
            columns = parse_schema_columns(item["header"].get("schema", ""))
        elif "row" in item:
            values = item["row"].get("columns", [])
            rows.append(dict(zip(columns, values)))
        elif "errorMessage" in item:
            err = item["errorMessage"]
            msg = err.get("message") if isinstance(err, Mapping) else str(err)
            raise StatementExecutionError("pull query failed mid-stream", engine_message=msg)
    return rows


def _engine_message(body: Any, fallback: str) -> str:
    if isinstance(body, Mapping) and body.get("message"):
        return str(body["message"])
    if isinstance(body, list):
        for item in body:
            if isinstance(item, Mapping) and item.get("message"):
                return str(item["message"])
    return fallback


class KsqlRestExecutor(StatementExecutor):
    """
    aiohttp-based executor. One `ClientSession` per executor, shared by every
    handle of the owning context; safe for concurrent use.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_ms: int = 30_000,
        default_properties: Mapping[str, str] | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.timeout_ms = timeout_ms
        self.default_properties: dict[str, str] = {AUTO_OFFSET_RESET_PROP: "earliest", **(default_properties or {})}
        self._session = session
        self._owns_session = session is None
        self.log = get_logger("transport.executor")

    # ---- lifecycle

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_ms / 1000.0),
                headers={"Accept": _ACCEPT, "Content-Type": _ACCEPT},
            )
            self._owns_session = True

    async def stop(self) -> None:
        if self._session is not None and self._owns_session:
            with swallow(logger=self.log, code="executor.session.close", msg="session close failed"):
                await self._session.close()
        self._session = None

    async def __aenter__(self) -> KsqlRestExecutor:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ---- helpers

    def _payload(self, statement: str, properties: Mapping[str, str] | None) -> dict[str, Any]:
        return {"ksql": statement, "streamsProperties": {**self.default_properties, **(properties or {})}}

    async def _post(self, path: str, payload: dict[str, Any]) -> tuple[int, Any]:
        if self._session is None:
            await self.start()
        assert self._session is not None
        async with self._session.post(f"{self.url}{path}", json=payload) as resp:
            try:
                body = await resp.json(content_type=None, loads=loads)
            except ValueError:
                body = await resp.text()
            return resp.status, body

    # ---- API

    async def execute(self, statement: str, properties: Mapping[str, str] | None = None) -> StatementResult:
        try:
            status, body = await self._post("/ksql", self._payload(statement, properties))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.log.warning("engine unreachable", url=self.url, error=str(e))
            return StatementResult(ok=False, status_code=None, engine_message=f"engine unreachable: {e}")

        if 200 <= status < 300:
            self.log.debug("statement accepted", status=status)
            return StatementResult(ok=True, status_code=status, body=body)
        message = _engine_message(body, fallback=f"HTTP {status}")
        self.log.debug("statement rejected", status=status, engine_message=message)
        return StatementResult(ok=False, status_code=status, engine_message=message, body=body)

    async def query(self, statement: str, properties: Mapping[str, str] | None = None) -> list[dict[str, Any]]:
        try:
            status, body = await self._post("/query", self._payload(statement, properties))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StatementExecutionError(
                "engine unreachable", engine_message=str(e), statement=statement
            ) from e
        if not 200 <= status < 300:
            raise StatementExecutionError(
                "pull query rejected",
                status_code=status,
                engine_message=_engine_message(body, fallback=f"HTTP {status}"),
                statement=statement,
            )
        return parse_query_response(body)
