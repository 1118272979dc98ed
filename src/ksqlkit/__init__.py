from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version as _pkg_version

try:
    __version__ = _pkg_version("ksqlkit")
except PackageNotFoundError:  # pragma: no cover
    # running from a source checkout without an install
    __version__ = "0.0.0"

from .context import KsqlContext, TableBuilder
from .core.config import KsqlOptions
from .errors import (
    AmbiguousWindow,
    DeclarationError,
    DeserializationError,
    HandleStateError,
    InvalidDuration,
    InvalidJoin,
    InvalidPrecision,
    InvalidTimestamp,
    KsqlkitError,
    MissingTopicDeclaration,
    NoKeyDefined,
    SerializationError,
    StatementExecutionError,
    UnknownColumn,
    UnsupportedType,
)
from .runtime.entities import HandleState, KsqlStream, KsqlTable
from .runtime.error_policy import DeadLetterMessage, ErrorAction, ErrorPolicy
from .runtime.subscription import Subscription
from .schema import (
    Aggregation,
    BigInt,
    DecimalPrecision,
    DefaultValue,
    HoppingWindow,
    IntWidth,
    JoinType,
    Key,
    KsqlRecord,
    SessionWindow,
    SmallInt,
    StatementBuilder,
    Timestamp,
    TimestampSemantics,
    TumblingWindow,
    ValueFormat,
    describe,
    topic,
)

__all__ = [
    "Aggregation",
    "AmbiguousWindow",
    "BigInt",
    "DeadLetterMessage",
    "DecimalPrecision",
    "DeclarationError",
    "DefaultValue",
    "DeserializationError",
    "ErrorAction",
    "ErrorPolicy",
    "HandleState",
    "HandleStateError",
    "HoppingWindow",
    "IntWidth",
    "InvalidDuration",
    "InvalidJoin",
    "InvalidPrecision",
    "InvalidTimestamp",
    "JoinType",
    "Key",
    "KsqlContext",
    "KsqlOptions",
    "KsqlRecord",
    "KsqlStream",
    "KsqlTable",
    "KsqlkitError",
    "MissingTopicDeclaration",
    "NoKeyDefined",
    "SerializationError",
    "SessionWindow",
    "SmallInt",
    "StatementBuilder",
    "StatementExecutionError",
    "Subscription",
    "TableBuilder",
    "Timestamp",
    "TimestampSemantics",
    "TumblingWindow",
    "UnknownColumn",
    "UnsupportedType",
    "ValueFormat",
    "__version__",
    "describe",
    "topic",
]
