from __future__ import annotations

"""
ksqlkit.core.types
==================

Shared aliases and wire constants. Keep this module tiny and dependency-free.
"""

from typing import Final

Millis = int
TimestampMs = int

# Streams property sent with every statement unless overridden.
AUTO_OFFSET_RESET_PROP: Final[str] = "ksql.streams.auto.offset.reset"

# Separator used when a composite key is encoded into a single Kafka key.
COMPOSITE_KEY_SEPARATOR: Final[str] = "|"

__all__ = [
    "AUTO_OFFSET_RESET_PROP",
    "COMPOSITE_KEY_SEPARATOR",
    "Millis",
    "TimestampMs",
]
