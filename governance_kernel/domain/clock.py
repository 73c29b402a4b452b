"""
Injectable time source.

Services stamp transitions, reviews and audit entries with ``clock.now()``,
and the payment indicator counts days to a due date from ``clock.today()``.
Nothing in the kernel calls ``datetime.now()`` directly, so tests can pin
both.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    """Source of timezone-aware timestamps."""

    @abstractmethod
    def now(self) -> datetime:
        ...

    def today(self) -> date:
        """Calendar date of ``now()`` in UTC; due dates are compared against it."""
        return self.now().astimezone(timezone.utc).date()


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock that only moves when told to.

    ``now()`` is stable between calls, so two stamps taken in the same
    operation compare equal unless the test advances time in between.
    """

    def __init__(self, start: datetime | None = None):
        start = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        if start.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware start time")
        self._current = start

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: int = 1) -> None:
        self._current += timedelta(seconds=seconds)

    def advance_days(self, days: int) -> None:
        self._current += timedelta(days=days)
