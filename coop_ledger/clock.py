"""
Clock Module

Supplies "now" and "today" to the ledger so that due dates and lateness can
be computed deterministically in tests.
"""

from abc import ABC, abstractmethod
from datetime import datetime, date, timezone, timedelta
from typing import Optional


class Clock(ABC):
    """Source of the current time"""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware UTC datetime"""
        pass

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    """Wall-clock time"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """
    Manually driven clock for tests and batch replays.

    Time only moves forward through ``advance`` / ``set``.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        if initial_time is None:
            initial_time = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._current_time = _as_utc(initial_time)

    @classmethod
    def on(cls, day: date) -> 'FixedClock':
        """Clock fixed at noon UTC on the given day"""
        return cls(datetime(day.year, day.month, day.day, 12, 0, tzinfo=timezone.utc))

    def now(self) -> datetime:
        return self._current_time

    def set(self, new_time: datetime) -> None:
        new_time = _as_utc(new_time)
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    def advance(self, days: int = 0, **kwargs) -> datetime:
        """Move the clock forward by a timedelta expressed as keyword arguments"""
        self.set(self._current_time + timedelta(days=days, **kwargs))
        return self._current_time


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
