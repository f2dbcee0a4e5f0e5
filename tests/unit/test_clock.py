"""Tests for time sources."""

from datetime import UTC, datetime, timedelta

import pytest

from healthchain_access.clock import Clock, FrozenClock, SystemClock


class TestClock:
    def test_base_clock_is_abstract(self):
        with pytest.raises(TypeError):
            Clock()

    def test_subclass_without_now_is_abstract(self):
        class Incomplete(Clock):
            pass

        with pytest.raises(TypeError):
            Incomplete()

    def test_system_clock_is_timezone_aware(self):
        assert SystemClock().now().tzinfo is not None


class TestFrozenClock:
    def test_advance(self):
        start = datetime(2025, 3, 1, tzinfo=UTC)
        clock = FrozenClock(start)

        assert clock.advance(timedelta(minutes=5)) == start + timedelta(minutes=5)
        assert clock.now() == start + timedelta(minutes=5)

    def test_naive_datetime_rejected(self):
        with pytest.raises(ValueError, match="timezone-aware"):
            FrozenClock(datetime(2025, 3, 1))

    def test_set_rejects_naive_datetime(self):
        clock = FrozenClock()
        with pytest.raises(ValueError):
            clock.set(datetime(2025, 3, 1))
