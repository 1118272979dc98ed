from __future__ import annotations

"""
ksqlkit.core.time
=================

Clock abstraction so dead-letter stamping is testable:
- Clock Protocol for dependency injection.
- SystemClock: production default.
- ManualClock: deterministic wall time for tests.
"""

import time
from typing import Protocol

from .types import Millis, TimestampMs


class Clock(Protocol):
    def now_ms(self) -> TimestampMs: ...


class SystemClock:
    """Clock backed by system time."""

    def now_ms(self) -> TimestampMs:
        return time.time_ns() // 1_000_000


class ManualClock(SystemClock):
    """Wall time starts at `start_ms` and only moves on `advance()`."""

    def __init__(self, start_ms: Millis = 0) -> None:
        self._wall: Millis = start_ms

    def now_ms(self) -> TimestampMs:
        return self._wall

    def advance(self, ms: Millis) -> None:
        self._wall += max(0, int(ms))
