# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Window specifications for windowed aggregations and their WINDOW clause text.

Durations are accepted as `datetime.timedelta` or integer milliseconds and are
normalized to integer milliseconds at construction. Each duration renders in a
single unit: below one second as MILLISECONDS, below one minute as SECONDS,
below one hour as MINUTES, below one day as HOURS, otherwise DAYS. The count
is truncated to whole units; each truncated duration is logged once as a warning:

    >>> TumblingWindow(1500).render()
    'TUMBLING (SIZE 1 SECONDS)'
    >>> HoppingWindow(timedelta(minutes=5), timedelta(minutes=1)).render()
    'HOPPING (SIZE 5 MINUTES, ADVANCE BY 1 MINUTES)'
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import ClassVar, Final, Union

from ..core.log import get_logger, warn_once
from ..errors import InvalidDuration

__all__ = [
    "Duration",
    "HoppingWindow",
    "SessionWindow",
    "TumblingWindow",
    "WindowSpec",
    "WindowType",
    "duration_ms",
    "parse_duration_text",
    "render_duration",
]

Duration = Union[timedelta, int]

# (unit, milliseconds per unit, exclusive upper bound in ms for picking this unit)
_UNITS: Final[tuple[tuple[str, int, int | None], ...]] = (
    ("MILLISECONDS", 1, 1_000),
    ("SECONDS", 1_000, 60_000),
    ("MINUTES", 60_000, 3_600_000),
    ("HOURS", 3_600_000, 86_400_000),
    ("DAYS", 86_400_000, None),
)
_UNIT_MS: Final[dict[str, int]] = {name: ms for name, ms, _ in _UNITS}

log = get_logger("schema.windows")


class WindowType(str, Enum):
    TUMBLING = "TUMBLING"
    HOPPING = "HOPPING"
    SESSION = "SESSION"


def duration_ms(value: Duration, what: str = "duration") -> int:
    """Normalize a timedelta or integer milliseconds to strictly positive milliseconds."""
    if isinstance(value, timedelta):
        ms = value // timedelta(milliseconds=1)
    elif isinstance(value, int) and not isinstance(value, bool):
        ms = value
    else:
        raise InvalidDuration(f"{what} must be a timedelta or integer milliseconds, got {type(value).__name__}")
    if ms <= 0:
        raise InvalidDuration(f"{what} must be strictly positive, got {ms} ms")
    return ms


def render_duration(ms: int) -> str:
    """Render a positive millisecond count as `<n> <UNIT>`."""
    for unit, unit_ms, upper in _UNITS:
        if upper is None or ms < upper:
            rendered = f"{ms // unit_ms} {unit}"
            if ms % unit_ms:
                warn_once(
                    log,
                    f"window.duration.truncated.{ms}",
                    "window duration truncated to whole units",
                    declared_ms=ms,
                    rendered=rendered,
                )
            return rendered
    raise AssertionError("unreachable")  # pragma: no cover


def parse_duration_text(text: str) -> int:
    """Inverse of render_duration(): `"5 MINUTES"` -> 300000."""
    count, _, unit = text.strip().partition(" ")
    try:
        return int(count) * _UNIT_MS[unit.strip().upper()]
    except (KeyError, ValueError):
        raise ValueError(f"not a duration: {text!r}") from None


class WindowSpec:
    """Base for window specifications; subclasses are frozen dataclasses."""

    window_type: ClassVar[WindowType]

    def render(self) -> str:
        raise NotImplementedError

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True, init=False)
class TumblingWindow(WindowSpec):
    """Fixed-size, non-overlapping windows."""

    size_ms: int
    window_type: ClassVar[WindowType] = WindowType.TUMBLING

    def __init__(self, size: Duration) -> None:
        object.__setattr__(self, "size_ms", duration_ms(size, "window size"))

    @classmethod
    def of(cls, size: Duration) -> TumblingWindow:
        return cls(size)

    @property
    def size(self) -> timedelta:
        return timedelta(milliseconds=self.size_ms)

    def render(self) -> str:
        return f"TUMBLING (SIZE {render_duration(self.size_ms)})"


@dataclass(frozen=True, init=False)
class HoppingWindow(WindowSpec):
    """Fixed-size windows that advance by `advance_by` and may overlap."""

    size_ms: int
    advance_ms: int
    window_type: ClassVar[WindowType] = WindowType.HOPPING

    def __init__(self, size: Duration, advance_by: Duration) -> None:
        size_ms = duration_ms(size, "window size")
        advance_ms = duration_ms(advance_by, "window advance")
        if advance_ms > size_ms:
            raise InvalidDuration(f"hopping advance ({advance_ms} ms) must not exceed window size ({size_ms} ms)")
        object.__setattr__(self, "size_ms", size_ms)
        object.__setattr__(self, "advance_ms", advance_ms)

    @classmethod
    def of(cls, size: Duration, advance_by: Duration) -> HoppingWindow:
        return cls(size, advance_by)

    @property
    def size(self) -> timedelta:
        return timedelta(milliseconds=self.size_ms)

    @property
    def advance_by(self) -> timedelta:
        return timedelta(milliseconds=self.advance_ms)

    def render(self) -> str:
        return f"HOPPING (SIZE {render_duration(self.size_ms)}, ADVANCE BY {render_duration(self.advance_ms)})"


@dataclass(frozen=True, init=False)
class SessionWindow(WindowSpec):
    """Activity windows closed after `gap` of inactivity."""

    gap_ms: int
    window_type: ClassVar[WindowType] = WindowType.SESSION

    def __init__(self, gap: Duration) -> None:
        object.__setattr__(self, "gap_ms", duration_ms(gap, "session gap"))

    @classmethod
    def of(cls, gap: Duration) -> SessionWindow:
        return cls(gap)

    @property
    def gap(self) -> timedelta:
        return timedelta(milliseconds=self.gap_ms)

    def render(self) -> str:
        return f"SESSION ({render_duration(self.gap_ms)})"
