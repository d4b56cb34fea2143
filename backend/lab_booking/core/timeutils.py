"""Date and time helpers for booking intervals.

Bookings keep their calendar dates and times of day as separate fields; every
comparison across them goes through a combined naive ``datetime`` expressed in
the lab's local timezone.
"""
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo


def combine(day: date, time_of_day: time) -> datetime:
    """Combine a calendar date and a time of day into one naive instant."""
    return datetime.combine(day, time_of_day.replace(tzinfo=None))


def inclusive_day_span(start: date, end: date) -> int:
    """Number of calendar days covered, counting both endpoints."""
    return (end - start).days + 1


def minutes_between(start: datetime, end: datetime) -> float:
    return (end - start) / timedelta(minutes=1)


def is_closure_day(day: date, closure_weekday: int) -> bool:
    return day.weekday() == closure_weekday


def lab_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def to_lab_local(moment: datetime, tz: tzinfo) -> datetime:
    """Convert an instant to naive lab-local wall time truncated to the minute.

    Naive inputs are assumed to already be lab-local.
    """
    if moment.tzinfo is not None:
        moment = moment.astimezone(tz).replace(tzinfo=None)
    return moment.replace(second=0, microsecond=0)


def intervals_overlap(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> bool:
    return start_a < end_b and start_b < end_a


def lab_now(tz: tzinfo) -> datetime:
    """Current lab-local wall time at minute precision."""
    return to_lab_local(datetime.now(timezone.utc), tz)
