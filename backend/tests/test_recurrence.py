from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from reportflow.schemas.scheduler import Frequency, RecurrenceSpec
from reportflow.services.recurrence import add_months, clamp_day, next_due, next_due_after

UTC = timezone.utc


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


def test_weekly_sunday_morning_crosses_spring_forward():
    spec = RecurrenceSpec(frequency=Frequency.WEEKLY, time_of_day="09:00", day_of_week=0)
    # Wednesday 2024-03-06, 10:00 EST. Clocks spring forward on Sunday 2024-03-10.
    anchor = _utc(2024, 3, 6, 15, 0)

    due = next_due(spec, "America/New_York", anchor)

    assert due == _utc(2024, 3, 10, 13, 0)


def test_weekly_on_the_target_day_after_the_time_moves_a_full_week():
    spec = RecurrenceSpec(frequency=Frequency.WEEKLY, time_of_day="09:00", day_of_week=3)
    anchor = _utc(2024, 3, 6, 15, 0)  # Wednesday, already past 09:00 local

    assert next_due(spec, "America/New_York", anchor) == _utc(2024, 3, 13, 13, 0)


def test_daily_same_day_when_time_not_reached():
    spec = RecurrenceSpec(frequency=Frequency.DAILY, time_of_day="09:00")
    anchor = _utc(2024, 1, 10, 13, 0)  # 08:00 EST

    assert next_due(spec, "America/New_York", anchor) == _utc(2024, 1, 10, 14, 0)


@pytest.mark.parametrize(
    "spec",
    [
        RecurrenceSpec(frequency=Frequency.DAILY, time_of_day="09:00"),
        RecurrenceSpec(frequency=Frequency.WEEKLY, time_of_day="09:00", day_of_week=3),
        RecurrenceSpec(frequency=Frequency.MONTHLY, time_of_day="09:00", day_of_month=10),
        RecurrenceSpec(frequency=Frequency.QUARTERLY, time_of_day="09:00", day_of_month=10),
        RecurrenceSpec(frequency=Frequency.SEMI_ANNUALLY, time_of_day="09:00", day_of_month=10),
        RecurrenceSpec(frequency=Frequency.ANNUALLY, time_of_day="09:00", day_of_month=10),
    ],
)
def test_result_is_strictly_after_an_anchor_on_the_occurrence(spec):
    # 2024-01-10 09:00 EST is an occurrence of every spec above.
    anchor = _utc(2024, 1, 10, 14, 0)

    due = next_due(spec, "America/New_York", anchor)

    assert due > anchor
    assert due.tzinfo is not None


def test_same_inputs_give_same_result():
    spec = RecurrenceSpec(frequency=Frequency.MONTHLY, time_of_day="18:45", day_of_month=15)
    anchor = _utc(2024, 5, 20, 3, 0)

    assert next_due(spec, "Europe/Berlin", anchor) == next_due(spec, "Europe/Berlin", anchor)


def test_monthly_day_31_clamps_to_end_of_february():
    spec = RecurrenceSpec(frequency=Frequency.MONTHLY, time_of_day="09:00", day_of_month=31)

    leap = next_due(spec, "UTC", _utc(2024, 2, 1))
    common = next_due(spec, "UTC", _utc(2023, 2, 1))

    assert leap == _utc(2024, 2, 29, 9, 0)
    assert common == _utc(2023, 2, 28, 9, 0)


def test_monthly_clamp_does_not_stick_after_a_short_month():
    spec = RecurrenceSpec(frequency=Frequency.MONTHLY, time_of_day="09:00", day_of_month=31)

    after_february = next_due(spec, "UTC", _utc(2024, 2, 29, 9, 0))

    assert after_february == _utc(2024, 3, 31, 9, 0)


def test_quarterly_chain_stays_on_day_of_month():
    spec = RecurrenceSpec(frequency=Frequency.QUARTERLY, time_of_day="08:00", day_of_month=15)
    due = next_due(spec, "UTC", _utc(2024, 1, 20))

    seen = []
    for _ in range(4):
        seen.append(due)
        due = next_due(spec, "UTC", due)

    assert seen == [
        _utc(2024, 4, 15, 8, 0),
        _utc(2024, 7, 15, 8, 0),
        _utc(2024, 10, 15, 8, 0),
        _utc(2025, 1, 15, 8, 0),
    ]


def test_annual_lands_in_january_of_the_following_year():
    spec = RecurrenceSpec(frequency=Frequency.ANNUALLY, time_of_day="09:00", day_of_month=15)

    assert next_due(spec, "UTC", _utc(2024, 3, 20)) == _utc(2025, 1, 15, 9, 0)


def test_annual_runs_this_january_when_not_yet_passed():
    spec = RecurrenceSpec(frequency=Frequency.ANNUALLY, time_of_day="09:00", day_of_month=15)
    due = next_due(spec, "UTC", _utc(2024, 1, 2))

    assert due == _utc(2024, 1, 15, 9, 0)
    assert next_due(spec, "UTC", due) == _utc(2025, 1, 15, 9, 0)


def test_ambiguous_local_time_resolves_to_second_occurrence():
    spec = RecurrenceSpec(frequency=Frequency.DAILY, time_of_day="01:30")
    # 01:30 happens twice on 2024-11-03 in New York: 05:30 UTC (EDT) and 06:30 UTC (EST).
    anchor = _utc(2024, 11, 3, 0, 0)

    assert next_due(spec, "America/New_York", anchor) == _utc(2024, 11, 3, 6, 30)


def test_nonexistent_local_time_resolves_forward():
    spec = RecurrenceSpec(frequency=Frequency.DAILY, time_of_day="02:30")
    # 02:30 does not exist on 2024-03-10 in New York; it lands on 03:30 EDT.
    anchor = _utc(2024, 3, 10, 0, 0)

    assert next_due(spec, "America/New_York", anchor) == _utc(2024, 3, 10, 7, 30)


def test_naive_anchor_is_rejected():
    spec = RecurrenceSpec(frequency=Frequency.DAILY, time_of_day="09:00")

    with pytest.raises(ValueError):
        next_due(spec, "UTC", datetime(2024, 1, 1, 0, 0))


def test_unknown_timezone_is_rejected():
    spec = RecurrenceSpec(frequency=Frequency.DAILY, time_of_day="09:00")

    with pytest.raises(ValueError, match="Unknown timezone"):
        next_due(spec, "Mars/Olympus_Mons", _utc(2024, 1, 1))


def test_weekly_requires_day_of_week():
    with pytest.raises(ValidationError):
        RecurrenceSpec(frequency=Frequency.WEEKLY, time_of_day="09:00")


def test_monthly_requires_day_of_month():
    with pytest.raises(ValidationError):
        RecurrenceSpec(frequency=Frequency.MONTHLY, time_of_day="09:00")


@pytest.mark.parametrize(
    "frequency, expected",
    [
        (Frequency.QUARTERLY, _utc(2024, 4, 1, 8, 0)),
        (Frequency.SEMI_ANNUALLY, _utc(2024, 7, 1, 8, 0)),
        (Frequency.ANNUALLY, _utc(2025, 1, 1, 8, 0)),
    ],
)
def test_longer_cycles_default_to_the_first_of_the_month(frequency, expected):
    spec = RecurrenceSpec(frequency=frequency, time_of_day="08:00")

    assert spec.day_of_month is None
    assert next_due(spec, "UTC", _utc(2024, 1, 20)) == expected


def test_time_of_day_must_be_hh_mm():
    with pytest.raises(ValidationError):
        RecurrenceSpec(frequency=Frequency.DAILY, time_of_day="9am")


def test_next_due_after_skips_missed_occurrences_on_the_grid():
    spec = RecurrenceSpec(frequency=Frequency.DAILY, time_of_day="09:00")
    anchor = _utc(2024, 1, 1, 9, 0)
    now = anchor + timedelta(days=3, hours=2)

    due = next_due_after(spec, "UTC", anchor, now)

    assert due == _utc(2024, 1, 5, 9, 0)


def test_next_due_after_with_anchor_as_floor_is_plain_next_due():
    spec = RecurrenceSpec(frequency=Frequency.DAILY, time_of_day="09:00")
    anchor = _utc(2024, 1, 1, 9, 0)

    assert next_due_after(spec, "UTC", anchor, anchor) == _utc(2024, 1, 2, 9, 0)


def test_month_helpers():
    assert add_months(2024, 11, 3) == (2025, 2)
    assert add_months(2024, 1, 12) == (2025, 1)
    assert clamp_day(2023, 4, 31).day == 30
