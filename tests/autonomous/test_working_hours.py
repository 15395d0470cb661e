"""Tests for the working-hours gate."""

from datetime import datetime, time
from zoneinfo import ZoneInfo

import pytest

from yolo.autonomous.models import WorkingHours
from yolo.autonomous.working_hours import is_working_time, next_window_start

UTC = ZoneInfo("UTC")
OFFICE = WorkingHours(start=time(9, 0), end=time(18, 0), timezone="UTC")


def at(day: int, hour: int, minute: int = 0, second: int = 0, tz=UTC) -> datetime:
    """March 2024: the 4th is a Monday, the 9th a Saturday."""
    return datetime(2024, 3, day, hour, minute, second, tzinfo=tz)


@pytest.mark.parametrize(
    "now, expected",
    [
        (at(5, 9, 0), True),          # start is inclusive
        (at(5, 8, 59, 59), False),
        (at(5, 17, 59, 59), True),
        (at(5, 18, 0), False),        # end is exclusive
        (at(9, 10, 0), False),        # Saturday
        (at(10, 10, 0), False),       # Sunday
        (at(4, 12, 0), True),         # Monday
    ],
)
def test_office_hours_boundaries(now, expected):
    assert is_working_time(now, OFFICE) is expected


def test_gate_is_pure():
    now = at(5, 12, 0)
    assert is_working_time(now, OFFICE) == is_working_time(now, OFFICE)


def test_timezone_conversion():
    """09:00-18:00 New York is 14:00-23:00 UTC before DST starts."""
    window = WorkingHours(start=time(9, 0), end=time(18, 0), timezone="America/New_York")
    assert is_working_time(at(5, 13, 30), window) is False
    assert is_working_time(at(5, 14, 0), window) is True
    assert is_working_time(at(5, 22, 59), window) is True
    assert is_working_time(at(5, 23, 0), window) is False


def test_overnight_window_belongs_to_opening_day():
    window = WorkingHours(start=time(22, 0), end=time(6, 0), timezone="UTC")
    assert is_working_time(at(8, 23, 0), window) is True    # Friday night
    assert is_working_time(at(9, 2, 0), window) is True     # early Saturday, opened Friday
    assert is_working_time(at(9, 23, 0), window) is False   # Saturday night
    assert is_working_time(at(11, 2, 0), window) is False   # early Monday, opened Sunday
    assert is_working_time(at(5, 6, 0), window) is False    # end exclusive
    assert is_working_time(at(5, 12, 0), window) is False


def test_equal_start_and_end_means_whole_day():
    window = WorkingHours(start=time(0, 0), end=time(0, 0), timezone="UTC")
    assert is_working_time(at(5, 0, 0), window) is True
    assert is_working_time(at(5, 23, 59), window) is True
    assert is_working_time(at(9, 12, 0), window) is False


def test_naive_now_is_local_time():
    naive = datetime(2024, 3, 5, 12, 0)
    expected = is_working_time(naive.astimezone(), OFFICE)
    assert is_working_time(naive, OFFICE) is expected


class TestNextWindowStart:

    def test_open_window_returns_now(self):
        now = at(5, 10, 0)
        assert next_window_start(now, OFFICE) == now

    def test_later_same_day(self):
        assert next_window_start(at(5, 7, 0), OFFICE) == at(5, 9, 0)

    def test_weekend_rolls_to_monday(self):
        assert next_window_start(at(9, 10, 0), OFFICE) == at(11, 9, 0)
        assert next_window_start(at(8, 18, 30), OFFICE) == at(11, 9, 0)

    def test_no_weekdays(self):
        window = WorkingHours(start=time(9, 0), end=time(18, 0), weekdays=())
        assert next_window_start(at(5, 10, 0), window) is None
