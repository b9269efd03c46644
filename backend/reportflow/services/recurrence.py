"""Next-due computation for recurring report schedules.

Everything here is pure: the only notion of "now" is the ``anchor`` passed
in, so results depend on nothing but the arguments.

Local wall-clock times are resolved in the schedule's IANA timezone. When a
local time is ambiguous (clocks fall back) or nonexistent (clocks spring
forward), both fold interpretations are converted to UTC and the later
instant wins: a repeated 01:30 maps to its second occurrence, and a skipped
02:30 maps to 03:30 local time.
"""

import calendar
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from reportflow.schemas.scheduler import Frequency, RecurrenceSpec

MONTH_STEPS = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.SEMI_ANNUALLY: 6,
}


def spec_from_schedule(schedule) -> RecurrenceSpec:
    return RecurrenceSpec(
        frequency=schedule.frequency,
        time_of_day=schedule.time_of_day,
        day_of_week=schedule.day_of_week,
        day_of_month=schedule.day_of_month,
    )


def resolve_timezone(timezone_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone '{timezone_name}'") from exc


def localize(day: date, at: time, tz: ZoneInfo) -> datetime:
    """Convert a local date and wall time to an aware UTC instant."""
    first = datetime.combine(day, at, tzinfo=tz).astimezone(timezone.utc)
    second = datetime.combine(day, at, tzinfo=tz).replace(fold=1).astimezone(timezone.utc)
    return max(first, second)


def clamp_day(year: int, month: int, requested_day: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(requested_day, last_day))


def add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def _sunday_based_weekday(day: date) -> int:
    # date.weekday() is Monday=0; schedules use Sunday=0.
    return (day.weekday() + 1) % 7


def next_due(spec: RecurrenceSpec, timezone_name: str, anchor: datetime) -> datetime:
    """Return the first occurrence of ``spec`` strictly after ``anchor``."""
    if anchor.tzinfo is None:
        raise ValueError("anchor must be timezone-aware")

    tz = resolve_timezone(timezone_name)
    at = time(spec.hour, spec.minute)
    local_today = anchor.astimezone(tz).date()

    if spec.frequency == Frequency.DAILY:
        candidate = localize(local_today, at, tz)
        if candidate <= anchor:
            candidate = localize(local_today + timedelta(days=1), at, tz)
        return candidate

    if spec.frequency == Frequency.WEEKLY:
        target = spec.day_of_week if spec.day_of_week is not None else 0
        days_ahead = (target - _sunday_based_weekday(local_today)) % 7
        candidate = localize(local_today + timedelta(days=days_ahead), at, tz)
        if candidate <= anchor:
            candidate = localize(local_today + timedelta(days=days_ahead + 7), at, tz)
        return candidate

    requested_day = spec.day_of_month if spec.day_of_month is not None else 1
    if spec.frequency == Frequency.ANNUALLY:
        # Annual schedules always fall in January.
        candidate = localize(clamp_day(local_today.year, 1, requested_day), at, tz)
        if candidate <= anchor:
            candidate = localize(clamp_day(local_today.year + 1, 1, requested_day), at, tz)
        return candidate

    step = MONTH_STEPS[spec.frequency]
    year, month = local_today.year, local_today.month
    candidate = localize(clamp_day(year, month, requested_day), at, tz)
    while candidate <= anchor:
        year, month = add_months(year, month, step)
        candidate = localize(clamp_day(year, month, requested_day), at, tz)
    return candidate


def next_due_after(
    spec: RecurrenceSpec,
    timezone_name: str,
    anchor: datetime,
    not_before: datetime,
) -> datetime:
    """Advance along the recurrence from ``anchor`` until past ``not_before``.

    Used after downtime so missed occurrences are skipped without leaving the
    recurrence grid defined by ``anchor``.
    """
    candidate = next_due(spec, timezone_name, anchor)
    while candidate <= not_before:
        candidate = next_due(spec, timezone_name, candidate)
    return candidate
