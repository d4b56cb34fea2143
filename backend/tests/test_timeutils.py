from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

from lab_booking.core.timeutils import (
    combine,
    inclusive_day_span,
    intervals_overlap,
    is_closure_day,
    lab_timezone,
    minutes_between,
    to_lab_local,
)


def test_combine_across_month_boundary():
    start = combine(date(2024, 1, 31), time(23, 0))
    end = combine(date(2024, 2, 1), time(1, 0))
    assert minutes_between(start, end) == 120
    assert inclusive_day_span(date(2024, 1, 31), date(2024, 2, 1)) == 2


def test_combine_across_year_boundary():
    assert combine(date(2024, 12, 31), time(22)) < combine(date(2025, 1, 1), time(8))


def test_closure_day_uses_python_weekday():
    assert is_closure_day(date(2024, 6, 9), 6)
    assert not is_closure_day(date(2024, 6, 10), 6)


def test_to_lab_local_converts_and_truncates():
    moment = datetime(2024, 6, 10, 8, 1, 42, 123, tzinfo=timezone.utc)
    local = to_lab_local(moment, ZoneInfo("Asia/Kolkata"))
    assert local == datetime(2024, 6, 10, 13, 31)
    assert local.tzinfo is None


def test_to_lab_local_keeps_naive_wall_time():
    assert to_lab_local(datetime(2024, 6, 10, 10, 1, 30), timezone.utc) == datetime(2024, 6, 10, 10, 1)


def test_lab_timezone():
    assert lab_timezone("UTC") is timezone.utc
    assert lab_timezone("Europe/Berlin") == ZoneInfo("Europe/Berlin")


def test_intervals_overlap():
    a = (datetime(2024, 6, 10, 9), datetime(2024, 6, 10, 10))
    assert intervals_overlap(*a, datetime(2024, 6, 10, 9, 30), datetime(2024, 6, 10, 11))
    # Touching endpoints do not overlap
    assert not intervals_overlap(*a, datetime(2024, 6, 10, 10), datetime(2024, 6, 10, 11))
