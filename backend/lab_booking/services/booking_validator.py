"""Business rules for a requested booking interval.

Rules are checked in a fixed order and the first failing rule decides the
error code, so clients can always show one exact message.
"""
from dataclasses import dataclass
from datetime import date, datetime, time

from lab_booking.config import Settings, get_settings
from lab_booking.core.exceptions import BadRequestError
from lab_booking.core.timeutils import (
    combine,
    inclusive_day_span,
    is_closure_day,
    minutes_between,
)


class ValidationCode:
    MISSING_FIELDS = "MissingFields"
    CLOSURE_DAY_START = "ClosureDayStart"
    CLOSURE_DAY_END = "ClosureDayEnd"
    END_BEFORE_START = "EndBeforeStart"
    DURATION_TOO_LONG = "DurationTooLong"
    END_BEFORE_START_INSTANT = "EndBeforeStartInstant"
    DURATION_TOO_SHORT = "DurationTooShort"


class BookingValidationError(BadRequestError):
    default_code = ValidationCode.MISSING_FIELDS


@dataclass(frozen=True)
class BookingRules:
    closure_weekday: int = 6
    max_days: int = 7
    min_same_day_minutes: int = 60

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "BookingRules":
        settings = settings or get_settings()
        return cls(
            closure_weekday=settings.CLOSURE_WEEKDAY,
            max_days=settings.MAX_BOOKING_DAYS,
            min_same_day_minutes=settings.MIN_SAME_DAY_MINUTES,
        )


@dataclass(frozen=True)
class BookingInterval:
    start_date: date
    end_date: date
    start_time: time
    end_time: time

    @property
    def starts_at(self) -> datetime:
        return combine(self.start_date, self.start_time)

    @property
    def ends_at(self) -> datetime:
        return combine(self.end_date, self.end_time)

    @property
    def day_span(self) -> int:
        return inclusive_day_span(self.start_date, self.end_date)


def validate_interval(
    start_date: date | None,
    end_date: date | None,
    start_time: time | None,
    end_time: time | None,
    rules: BookingRules | None = None,
) -> BookingInterval:
    """Return the normalized interval or raise BookingValidationError."""
    rules = rules or BookingRules.from_settings()

    if start_date is None or end_date is None or start_time is None or end_time is None:
        raise BookingValidationError(
            "Start date, end date, start time and end time are required",
            ValidationCode.MISSING_FIELDS,
        )

    if is_closure_day(start_date, rules.closure_weekday):
        raise BookingValidationError(
            "Lab is closed on the selected start date. Please select a different start date.",
            ValidationCode.CLOSURE_DAY_START,
        )
    if is_closure_day(end_date, rules.closure_weekday):
        raise BookingValidationError(
            "Lab is closed on the selected end date. Please select a different end date.",
            ValidationCode.CLOSURE_DAY_END,
        )

    if end_date < start_date:
        raise BookingValidationError(
            "End date must be after or equal to start date",
            ValidationCode.END_BEFORE_START,
        )

    interval = BookingInterval(
        start_date=start_date,
        end_date=end_date,
        start_time=start_time.replace(tzinfo=None),
        end_time=end_time.replace(tzinfo=None),
    )

    if interval.day_span > rules.max_days:
        raise BookingValidationError(
            f"Booking duration cannot exceed {rules.max_days} days",
            ValidationCode.DURATION_TOO_LONG,
        )

    if interval.ends_at < interval.starts_at:
        raise BookingValidationError(
            "End time must be after start time",
            ValidationCode.END_BEFORE_START_INSTANT,
        )

    if interval.day_span == 1:
        duration = minutes_between(interval.starts_at, interval.ends_at)
        if duration < rules.min_same_day_minutes:
            raise BookingValidationError(
                f"Minimum booking duration is {rules.min_same_day_minutes} minutes "
                "for same-day bookings",
                ValidationCode.DURATION_TOO_SHORT,
            )

    return interval
