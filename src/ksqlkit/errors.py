# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Error taxonomy for ksqlkit.

Three families, by when they happen:

- Declaration-time (`DeclarationError` and subclasses): a record type, window
  or derivation is malformed. Raised synchronously the first time the
  declaration is resolved; never retried.
- Statement-time (`StatementExecutionError`): the engine rejected a statement
  or could not be reached. "already exists" answers are not errors.
- Record-time (`RecordError`): a single message could not be decoded
  (`DeserializationError`, governed by the subscription's error policy) or a
  record could not be encoded for `insert()` (`SerializationError`, always
  raised to the caller).
"""

from typing import Any


class KsqlkitError(Exception):
    """Base class for all ksqlkit errors."""

    ...


# ---------------------------------------------------------------------------
# Declaration-time
# ---------------------------------------------------------------------------


class DeclarationError(KsqlkitError):
    """A record type, window or derivation declaration is invalid."""

    def __init__(self, message: str, *, entity: str | None = None) -> None:
        super().__init__(message)
        self.entity = entity


class MissingTopicDeclaration(DeclarationError):
    """A root stream/table record type has no @topic declaration."""


class NoKeyDefined(DeclarationError):
    """A root stream/table record type declares no key property."""


class InvalidPrecision(DeclarationError):
    """Decimal precision/scale out of range (precision >= 1, 0 <= scale <= precision)."""


class UnsupportedType(DeclarationError):
    """A property's declared type has no column type mapping."""

    def __init__(self, message: str, *, entity: str | None = None, field: str | None = None) -> None:
        super().__init__(message, entity=entity)
        self.field = field


class AmbiguousWindow(DeclarationError):
    """Aggregation requested without exactly one window, or several windows given."""


class InvalidDuration(DeclarationError):
    """Window duration is non-positive, or hopping advance exceeds size."""


class InvalidTimestamp(DeclarationError):
    """More than one timestamp property, or an empty timestamp format."""


class UnknownColumn(DeclarationError):
    """A derivation references a column the source entity does not have."""


class InvalidJoin(DeclarationError):
    """Join sides, join type and WITHIN window do not form a join the engine accepts."""


# ---------------------------------------------------------------------------
# Statement-time
# ---------------------------------------------------------------------------


class StatementExecutionError(KsqlkitError):
    """
    The engine rejected a statement, or it could not be reached.

    `status_code` is the HTTP status (None when the engine was unreachable);
    `engine_message` is the engine's own message, verbatim where available.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        engine_message: str | None = None,
        entity: str | None = None,
        statement: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.engine_message = engine_message
        self.entity = entity
        self.statement = statement

    def __str__(self) -> str:
        base = super().__str__()
        parts = []
        if self.entity:
            parts.append(f"entity={self.entity}")
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.engine_message:
            parts.append(f"engine={self.engine_message!r}")
        return f"{base} ({', '.join(parts)})" if parts else base


class HandleStateError(KsqlkitError):
    """Operation not allowed in the handle's current state (e.g. after a failed create)."""


# ---------------------------------------------------------------------------
# Record-time
# ---------------------------------------------------------------------------


class RecordError(KsqlkitError):
    """A single record failed to (de)serialize."""

    def __init__(self, message: str, *, entity: str | None = None, topic: str | None = None) -> None:
        super().__init__(message)
        self.entity = entity
        self.topic = topic


class DeserializationError(RecordError):
    """An inbound message could not be turned into the target record type."""

    def __init__(
        self,
        message: str,
        *,
        entity: str | None = None,
        topic: str | None = None,
        partition: int | None = None,
        offset: int | None = None,
        raw: Any = None,
    ) -> None:
        super().__init__(message, entity=entity, topic=topic)
        self.partition = partition
        self.offset = offset
        self.raw = raw


class SerializationError(RecordError):
    """An outbound record cannot be encoded (null key, precision overflow, unsupported format)."""

    def __init__(
        self, message: str, *, entity: str | None = None, topic: str | None = None, field: str | None = None
    ) -> None:
        super().__init__(message, entity=entity, topic=topic)
        self.field = field


__all__ = [
    "AmbiguousWindow",
    "DeclarationError",
    "DeserializationError",
    "HandleStateError",
    "InvalidDuration",
    "InvalidJoin",
    "InvalidPrecision",
    "InvalidTimestamp",
    "KsqlkitError",
    "MissingTopicDeclaration",
    "NoKeyDefined",
    "RecordError",
    "SerializationError",
    "StatementExecutionError",
    "UnknownColumn",
    "UnsupportedType",
]
