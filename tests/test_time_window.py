"""
Tests for schedule time windows.
"""

from datetime import datetime, timezone

import pytest

from cost_scheduler.scheduler.time_window import ensure_timezone, is_current_time_in_range, parse_time

WEEKDAYS = ["Mon", "Tue", "Wed", "Thu", "Fri"]


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestInRange:
    def test_inside_window(self):
        # Wednesday
        assert is_current_time_in_range("09:00", "18:00", "UTC", WEEKDAYS, now=utc(2024, 1, 10, 12, 0))

    def test_outside_window(self):
        assert not is_current_time_in_range("09:00", "18:00", "UTC", WEEKDAYS, now=utc(2024, 1, 10, 19, 0))

    def test_bounds_are_exclusive(self):
        assert not is_current_time_in_range("09:00", "18:00", "UTC", WEEKDAYS, now=utc(2024, 1, 10, 9, 0))
        assert not is_current_time_in_range("09:00", "18:00", "UTC", WEEKDAYS, now=utc(2024, 1, 10, 18, 0))

    def test_day_not_listed(self):
        # Saturday
        assert not is_current_time_in_range("09:00", "18:00", "UTC", WEEKDAYS, now=utc(2024, 1, 13, 12, 0))

    def test_timezone_applied(self):
        # 12:00 UTC is 17:30 in Kolkata
        assert is_current_time_in_range("17:00", "18:00", "Asia/Kolkata", WEEKDAYS, now=utc(2024, 1, 10, 12, 0))
        assert not is_current_time_in_range("09:00", "12:30", "Asia/Kolkata", WEEKDAYS, now=utc(2024, 1, 10, 12, 0))

    def test_weekday_is_local(self):
        # Friday 23:30 UTC is already Saturday in Tokyo
        assert not is_current_time_in_range("00:00", "23:59", "Asia/Tokyo", WEEKDAYS, now=utc(2024, 1, 12, 23, 30))

    def test_window_past_midnight(self):
        days = ["Wed"]
        assert is_current_time_in_range("22:00", "06:00", "UTC", days, now=utc(2024, 1, 10, 23, 0))
        assert not is_current_time_in_range("22:00", "06:00", "UTC", days, now=utc(2024, 1, 10, 21, 0))

    def test_seconds_precision(self):
        assert is_current_time_in_range("09:00:00", "09:00:30", "UTC", WEEKDAYS, now=utc(2024, 1, 10, 9, 0, 15))


class TestHelpers:
    def test_parse_time(self):
        assert parse_time("07:45").hour == 7
        assert parse_time("07:45:10").second == 10
        with pytest.raises(ValueError):
            parse_time("7")

    def test_ensure_timezone(self):
        assert ensure_timezone("Europe/Madrid")
        assert not ensure_timezone("Nowhere/Special")
        assert not ensure_timezone("")
