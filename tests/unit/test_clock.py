"""Unit tests for the injectable clocks."""

from datetime import UTC, datetime, timedelta

import pytest

from stock_kernel.domain.clock import EPOCH_FOR_TESTS, DeterministicClock, SystemClock


class TestDeterministicClock:

    def test_frozen_until_advanced(self):
        clock = DeterministicClock()
        assert clock.now() == clock.now() == EPOCH_FOR_TESTS

    def test_advance_by_seconds_and_timedelta(self):
        clock = DeterministicClock()
        clock.advance(30)
        assert clock.advance(timedelta(minutes=1)) == EPOCH_FOR_TESTS + timedelta(seconds=90)

    def test_cannot_go_backwards(self):
        with pytest.raises(ValueError):
            DeterministicClock().advance(-1)

    def test_requires_aware_start(self):
        with pytest.raises(ValueError):
            DeterministicClock(datetime(2024, 1, 1))


def test_system_clock_is_utc():
    assert SystemClock().now().tzinfo == UTC
