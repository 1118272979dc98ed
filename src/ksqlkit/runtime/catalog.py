# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Once-per-context submission of create statements.

Statements are keyed by a stable fingerprint of their text. The first caller
starts the submission; concurrent callers await the same in-flight task. A
successful (or "already exists") submission is remembered for the life of the
context; a failed one is forgotten so a freshly built handle may try again.
"""

import asyncio
from collections.abc import Mapping

from ..core.log import get_logger, log_context
from ..core.utils import stable_hash
from ..errors import StatementExecutionError
from ..transport.executor import StatementExecutor


class CreateCatalog:
    def __init__(self, executor: StatementExecutor, *, properties: Mapping[str, str] | None = None) -> None:
        self.executor = executor
        self.properties = dict(properties or {})
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self.log = get_logger("runtime.catalog")

    @staticmethod
    def fingerprint(statement: str) -> str:
        return stable_hash({"statement": statement})

    def is_created(self, statement: str) -> bool:
        task = self._tasks.get(self.fingerprint(statement))
        return task is not None and task.done() and not task.cancelled() and task.exception() is None

    async def ensure(self, statement: str, *, entity: str) -> None:
        """Submit `statement` unless this context already did; re-raise the shared failure."""
        fp = self.fingerprint(statement)
        task = self._tasks.get(fp)
        if task is None:
            task = asyncio.ensure_future(self._submit(statement, entity))
            task.add_done_callback(lambda t: self._drop_failed(fp, t))
            self._tasks[fp] = task
        # one cancelled caller must not cancel the submission for the others
        await asyncio.shield(task)

    def forget(self, statement: str) -> None:
        self._tasks.pop(self.fingerprint(statement), None)

    def _drop_failed(self, fp: str, task: asyncio.Task[None]) -> None:
        if task.cancelled() or task.exception() is not None:
            if self._tasks.get(fp) is task:
                del self._tasks[fp]

    async def _submit(self, statement: str, entity: str) -> None:
        with log_context(entity=entity, statement_kind=" ".join(statement.split()[:2])):
            result = await self.executor.execute(statement, self.properties)
            if result.ok:
                self.log.info("entity created")
                return
            if result.already_exists:
                self.log.debug("entity already exists", engine_message=result.engine_message)
                return
            self.log.error("create rejected", status=result.status_code, engine_message=result.engine_message)
            raise StatementExecutionError(
                f"create failed for {entity}",
                status_code=result.status_code,
                engine_message=result.engine_message,
                entity=entity,
                statement=statement,
            )
