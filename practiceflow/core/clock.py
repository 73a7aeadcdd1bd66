"""
Time source for the engine.

All engine arithmetic is done in epoch milliseconds. Components take a Clock
so delays and pause/resume catch-up can be simulated in tests.
"""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone

MS_PER_SECOND = 1000
MS_PER_MINUTE = 60 * MS_PER_SECOND
MS_PER_HOUR = 60 * MS_PER_MINUTE
MS_PER_DAY = 24 * MS_PER_HOUR

# Months are approximated as 30 days
DELAY_UNITS_MS = {
    "seconds": MS_PER_SECOND,
    "minutes": MS_PER_MINUTE,
    "hours": MS_PER_HOUR,
    "days": MS_PER_DAY,
    "weeks": 7 * MS_PER_DAY,
    "months": 30 * MS_PER_DAY,
}


def duration_to_ms(value: float, unit: str) -> int:
    """
    Convert a delay of ``value`` ``unit`` into milliseconds.

    Unknown units fall back to days.

    Example:
        >>> duration_to_ms(2, "hours")
        7200000
    """
    return int(value * DELAY_UNITS_MS.get(unit, MS_PER_DAY))


def ms_to_datetime(epoch_ms: int) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)


def datetime_to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


class Clock(ABC):
    """Source of the current time in epoch milliseconds."""

    @abstractmethod
    def now_ms(self) -> int:
        pass


class SystemClock(Clock):
    """Wall-clock time."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    Example:
        >>> clock = ManualClock(0)
        >>> clock.advance(hours=2, seconds=1)
        >>> clock.now_ms()
        7201000
    """

    def __init__(self, start_ms: int = 0):
        self._now = start_ms

    def now_ms(self) -> int:
        return self._now

    def set(self, epoch_ms: int) -> None:
        self._now = epoch_ms

    def advance(self, days: float = 0, hours: float = 0, minutes: float = 0,
                seconds: float = 0, ms: int = 0) -> None:
        self._now += int(
            days * MS_PER_DAY
            + hours * MS_PER_HOUR
            + minutes * MS_PER_MINUTE
            + seconds * MS_PER_SECOND
        ) + ms
