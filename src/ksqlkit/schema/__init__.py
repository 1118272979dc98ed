# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Declarations, descriptors, windows and statement rendering (no I/O).
"""

from .metadata import (
    BigInt,
    DecimalPrecision,
    DefaultValue,
    DescriptorRegistry,
    EntityDescriptor,
    IntWidth,
    Key,
    KsqlRecord,
    PropertyDescriptor,
    SmallInt,
    Timestamp,
    TimestampSemantics,
    TopicSpec,
    describe,
    describe_derived,
    topic,
)
from .statements import Aggregation, EntityKind, JoinType, StatementBuilder, ValueFormat, quote_literal
from .windows import HoppingWindow, SessionWindow, TumblingWindow, WindowSpec, WindowType

__all__ = [
    "Aggregation",
    "BigInt",
    "DecimalPrecision",
    "DefaultValue",
    "DescriptorRegistry",
    "EntityDescriptor",
    "EntityKind",
    "HoppingWindow",
    "IntWidth",
    "JoinType",
    "Key",
    "KsqlRecord",
    "PropertyDescriptor",
    "SessionWindow",
    "SmallInt",
    "StatementBuilder",
    "Timestamp",
    "TimestampSemantics",
    "TopicSpec",
    "TumblingWindow",
    "ValueFormat",
    "WindowSpec",
    "WindowType",
    "describe",
    "describe_derived",
    "quote_literal",
    "topic",
]
