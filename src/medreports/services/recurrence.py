"""
Recurrence computation for scheduled reports.

Works on any object exposing ``frequency``, ``day_of_week``,
``day_of_month``, ``hour``, ``minute``, ``timezone`` and ``is_active``
(the ``ScheduleSpec`` schema and the ``ReportSchedule`` model both do).

Day of week follows the portal convention: 0=Sunday .. 6=Saturday.
Day-of-month values past the end of a month clamp to the month's last day.
"""

import calendar
from datetime import date, datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from medreports.core.exceptions import InvalidScheduleError
from medreports.db.base import ensure_utc, utc_now
from medreports.models.schedule import ScheduleFrequency


def js_weekday(day: date) -> int:
    """Weekday with Sunday as 0."""
    return (day.weekday() + 1) % 7


def _frequency(schedule: Any) -> ScheduleFrequency:
    return ScheduleFrequency(schedule.frequency)


def _zone(schedule: Any) -> ZoneInfo:
    return ZoneInfo(schedule.timezone or "UTC")


def clamp_day(year: int, month: int, day: int) -> date:
    """``date(year, month, day)`` with ``day`` clamped to the month's last day."""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def add_months(day: date, months: int, on_day: int) -> date:
    """Move ``months`` forward and land on ``on_day`` (clamped)."""
    index = day.month - 1 + months
    return clamp_day(day.year + index // 12, index % 12 + 1, on_day)


# =============================================================================
# Validation
# =============================================================================


def validate_schedule(schedule: Any) -> None:
    """
    Validate a recurrence description.

    Raises:
        InvalidScheduleError: listing every violated field
    """
    errors: list[dict[str, Any]] = []

    frequency: ScheduleFrequency | None
    try:
        frequency = _frequency(schedule)
    except ValueError:
        frequency = None
        errors.append(
            {
                "field": "frequency",
                "message": "Frequency must be one of: "
                + ", ".join(f.value for f in ScheduleFrequency),
                "value": schedule.frequency,
            }
        )

    if frequency == ScheduleFrequency.WEEKLY:
        dow = schedule.day_of_week
        if dow is None or not 0 <= dow <= 6:
            errors.append(
                {
                    "field": "dayOfWeek",
                    "message": "Weekly schedules require dayOfWeek between 0 (Sunday) and 6",
                    "value": dow,
                }
            )

    if frequency == ScheduleFrequency.MONTHLY:
        dom = schedule.day_of_month
        if dom is None or not 1 <= dom <= 31:
            errors.append(
                {
                    "field": "dayOfMonth",
                    "message": "Monthly schedules require dayOfMonth between 1 and 31",
                    "value": dom,
                }
            )

    if schedule.hour is None or not 0 <= schedule.hour <= 23:
        errors.append(
            {"field": "hour", "message": "Hour must be between 0 and 23", "value": schedule.hour}
        )

    if schedule.minute is None or not 0 <= schedule.minute <= 59:
        errors.append(
            {
                "field": "minute",
                "message": "Minute must be between 0 and 59",
                "value": schedule.minute,
            }
        )

    try:
        _zone(schedule)
    except (ZoneInfoNotFoundError, ValueError):
        errors.append(
            {
                "field": "timezone",
                "message": "Unknown timezone",
                "value": schedule.timezone,
            }
        )

    if errors:
        raise InvalidScheduleError(errors)


# =============================================================================
# Next run
# =============================================================================


def _aligned_date(schedule: Any, frequency: ScheduleFrequency, day: date) -> date:
    """First date on or after ``day`` that the frequency allows."""
    if frequency == ScheduleFrequency.WEEKLY:
        distance = (schedule.day_of_week - js_weekday(day) + 7) % 7
        return day + timedelta(days=distance)
    if frequency == ScheduleFrequency.MONTHLY:
        # May land before ``day``; the caller advances past it
        return clamp_day(day.year, day.month, schedule.day_of_month)
    return day


def _advance(schedule: Any, frequency: ScheduleFrequency, day: date) -> date:
    """Date of the occurrence after the one on ``day``."""
    if frequency == ScheduleFrequency.DAILY:
        return day + timedelta(days=1)
    if frequency == ScheduleFrequency.WEEKLY:
        return day + timedelta(days=7)
    if frequency == ScheduleFrequency.MONTHLY:
        return add_months(day, 1, schedule.day_of_month)
    if frequency == ScheduleFrequency.QUARTERLY:
        return add_months(day, 3, 1)
    return date(day.year + 1, 1, 1)


def next_run(schedule: Any, from_instant: datetime) -> datetime:
    """
    Compute the next run strictly after ``from_instant``.

    The slot is evaluated in the schedule's timezone; the result is UTC.

    Args:
        schedule: Recurrence description (must already be valid)
        from_instant: Reference instant; naive values are treated as UTC

    Returns:
        Aware UTC datetime strictly greater than ``from_instant``
    """
    frequency = _frequency(schedule)
    zone = _zone(schedule)
    start = ensure_utc(from_instant)

    day = _aligned_date(schedule, frequency, start.astimezone(zone).date())

    def at_slot(d: date) -> datetime:
        return datetime(d.year, d.month, d.day, schedule.hour, schedule.minute, tzinfo=zone)

    candidate = at_slot(day)
    # A single step is enough except around DST shifts
    while candidate <= start:
        day = _advance(schedule, frequency, day)
        candidate = at_slot(day)

    return candidate.astimezone(timezone.utc)


def first_run(schedule: Any, start_date: datetime | None, now: datetime | None = None) -> datetime:
    """Next run for a newly registered schedule, not before its start date."""
    now = ensure_utc(now or utc_now())
    anchor = now
    if start_date is not None and ensure_utc(start_date) > now:
        # Allow the very first slot to fall exactly on the start instant
        anchor = ensure_utc(start_date) - timedelta(microseconds=1)
    return next_run(schedule, anchor)


def is_overdue(schedule: Any, last_known_run: datetime, now: datetime | None = None) -> bool:
    """True iff the schedule is active and its next slot after ``last_known_run`` has passed."""
    if not schedule.is_active:
        return False
    now = ensure_utc(now or utc_now())
    return now > next_run(schedule, last_known_run)
