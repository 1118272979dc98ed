# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Transport abstractions and implementations.
"""

from .bus import Bus, Consumer, Received
from .executor import KsqlRestExecutor, StatementExecutor, StatementResult
from .kafka_bus import KafkaBus

__all__ = [
    "Bus",
    "Consumer",
    "KafkaBus",
    "KsqlRestExecutor",
    "Received",
    "StatementExecutor",
    "StatementResult",
]
