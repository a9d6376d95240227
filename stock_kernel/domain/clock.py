"""
Clock -- injectable time source.

Engines and services never call ``datetime.now()``: ledger entry times,
transfer shipped/received/cancelled times and token scan times all come
from the Clock they were built with, so tests can pin and step time.

Architecture position:
    Kernel > Domain.  SystemClock is the only place the kernel reads the
    wall clock.
"""

from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta

EPOCH_FOR_TESTS = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """A timezone-aware current time."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(UTC)


class DeterministicClock(Clock):
    """
    Frozen clock for tests.

    ``now()`` keeps returning the same instant until ``advance()`` moves it,
    so rows written in one step share a timestamp and ordering by time is
    under the test's control.
    """

    def __init__(self, start: datetime = EPOCH_FOR_TESTS):
        if start.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware start")
        self._current = start

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: float | timedelta = 1) -> datetime:
        """Move forward and return the new time."""
        step = seconds if isinstance(seconds, timedelta) else timedelta(seconds=seconds)
        if step < timedelta(0):
            raise ValueError("time only moves forward")
        self._current += step
        return self._current
