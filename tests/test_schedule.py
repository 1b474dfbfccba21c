from datetime import datetime, timezone

import pytest

from docreg.scheduled_jobs.enums import ScheduleType
from docreg.scheduled_jobs.errors import ValidationError
from docreg.scheduled_jobs.schedule import Schedule, compute_next_run, validate_schedule


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


MONDAY_8AM = utc(2025, 3, 10, 8, 0)


def daily(time_of_day="09:00", tz="UTC"):
    return Schedule.from_dict({"type": "DAILY", "time_of_day": time_of_day, "timezone": tz})


def test_daily_before_slot_runs_same_day():
    assert compute_next_run(daily(), MONDAY_8AM) == utc(2025, 3, 10, 9, 0)


def test_daily_after_slot_rolls_to_tomorrow():
    assert compute_next_run(daily(), utc(2025, 3, 10, 10, 0)) == utc(2025, 3, 11, 9, 0)


def test_daily_exactly_at_slot_is_strictly_after():
    assert compute_next_run(daily(), utc(2025, 3, 10, 9, 0)) == utc(2025, 3, 11, 9, 0)


def test_daily_uses_schedule_timezone():
    # London is on BST (UTC+1) in June.
    sched = daily("09:00", "Europe/London")
    assert compute_next_run(sched, utc(2025, 6, 2, 7, 0)) == utc(2025, 6, 2, 8, 0)


def test_compute_next_run_is_deterministic():
    sched = daily()
    assert compute_next_run(sched, MONDAY_8AM) == compute_next_run(sched, MONDAY_8AM)


def test_weekly_counts_sunday_as_zero():
    sched = Schedule.from_dict({"type": "WEEKLY", "time_of_day": "09:00", "day_of_week": 0})
    assert compute_next_run(sched, MONDAY_8AM) == utc(2025, 3, 16, 9, 0)


def test_weekly_same_day_slot_still_ahead():
    sched = Schedule.from_dict({"type": "WEEKLY", "time_of_day": "09:00", "day_of_week": 1})
    assert compute_next_run(sched, MONDAY_8AM) == utc(2025, 3, 10, 9, 0)
    assert compute_next_run(sched, utc(2025, 3, 10, 9, 30)) == utc(2025, 3, 17, 9, 0)


def test_monthly_clamps_to_last_day_of_month():
    sched = Schedule.from_dict({"type": "MONTHLY", "time_of_day": "09:00", "day_of_month": 31})
    assert compute_next_run(sched, utc(2025, 2, 10, 0, 0)) == utc(2025, 2, 28, 9, 0)
    assert compute_next_run(sched, utc(2025, 2, 28, 12, 0)) == utc(2025, 3, 31, 9, 0)


def test_monthly_rolls_over_year_end():
    sched = Schedule.from_dict({"type": "MONTHLY", "time_of_day": "06:00", "day_of_month": 1})
    assert compute_next_run(sched, utc(2025, 12, 15, 0, 0)) == utc(2026, 1, 1, 6, 0)


def test_cron_monday_morning():
    sched = Schedule.from_dict({"type": "CRON", "cron_expression": "0 9 * * 1"})
    assert compute_next_run(sched, MONDAY_8AM) == utc(2025, 3, 10, 9, 0)
    assert compute_next_run(sched, utc(2025, 3, 10, 9, 0)) == utc(2025, 3, 17, 9, 0)


def test_cron_day_of_week_zero_is_sunday():
    sched = Schedule.from_dict({"type": "CRON", "cron_expression": "30 6 * * 0"})
    assert compute_next_run(sched, MONDAY_8AM) == utc(2025, 3, 16, 6, 30)


def test_cron_seven_is_also_sunday():
    sched = Schedule.from_dict({"type": "CRON", "cron_expression": "30 6 * * 7"})
    assert compute_next_run(sched, MONDAY_8AM) == utc(2025, 3, 16, 6, 30)


def test_cron_weekday_range():
    sched = Schedule.from_dict({"type": "CRON", "cron_expression": "0 18 * * 1-5"})
    # Friday evening rolls to Monday.
    assert compute_next_run(sched, utc(2025, 3, 14, 19, 0)) == utc(2025, 3, 17, 18, 0)


def test_cron_step_minutes():
    sched = Schedule.from_dict({"type": "CRON", "cron_expression": "*/15 * * * *"})
    assert compute_next_run(sched, utc(2025, 3, 10, 8, 7)) == utc(2025, 3, 10, 8, 15)


def test_cron_in_timezone():
    sched = Schedule.from_dict({"type": "CRON", "cron_expression": "0 9 * * *", "timezone": "America/New_York"})
    # EDT (UTC-4) from 9 March 2025.
    assert compute_next_run(sched, MONDAY_8AM) == utc(2025, 3, 10, 13, 0)


def test_cron_day_of_month_or_day_of_week():
    sched = Schedule.from_dict({"type": "CRON", "cron_expression": "0 9 1 * 1"})
    # Sunday 2 March: the Monday comes first.
    assert compute_next_run(sched, utc(2025, 3, 2, 0, 0)) == utc(2025, 3, 3, 9, 0)
    # Tuesday 29 April: the 1st of May comes before Monday 5 May.
    assert compute_next_run(sched, utc(2025, 4, 29, 0, 0)) == utc(2025, 5, 1, 9, 0)


def test_cron_restricted_day_of_month_with_any_weekday():
    sched = Schedule.from_dict({"type": "CRON", "cron_expression": "0 9 15 * *"})
    assert compute_next_run(sched, MONDAY_8AM) == utc(2025, 3, 15, 9, 0)


def test_once_future_and_overdue():
    sched = Schedule.from_dict({"type": "ONCE", "scheduled_for": "2025-03-12T10:00:00Z"})
    assert compute_next_run(sched, MONDAY_8AM) == utc(2025, 3, 12, 10, 0)
    late = utc(2025, 3, 13, 0, 0)
    assert compute_next_run(sched, late) == late


def test_immediate_fires_at_reference():
    sched = Schedule.from_dict({"type": "IMMEDIATE"})
    assert compute_next_run(sched, MONDAY_8AM) == MONDAY_8AM
    assert sched.is_one_shot


def test_from_dict_accepts_camel_case_and_drops_irrelevant_fields():
    sched = Schedule.from_dict(
        {"scheduleType": "weekly", "timeOfDay": "07:30", "dayOfWeek": 3, "dayOfMonth": 12, "cronExpression": "* * * * *"}
    )
    assert sched.type == ScheduleType.WEEKLY
    assert sched.day_of_month is None
    assert sched.cron_expression is None
    assert sched.to_dict() == {"type": "WEEKLY", "timezone": "UTC", "time_of_day": "07:30", "day_of_week": 3}


def test_time_of_day_defaults_to_ten():
    sched = Schedule.from_dict({"type": "DAILY"})
    assert sched.time_of_day == "10:00"


@pytest.mark.parametrize(
    "data",
    [
        {"type": "ONCE", "scheduled_for": "2025-03-01T00:00:00Z"},
        {"type": "ONCE"},
        {"type": "WEEKLY", "time_of_day": "09:00", "day_of_week": 7},
        {"type": "WEEKLY", "time_of_day": "09:00"},
        {"type": "MONTHLY", "time_of_day": "09:00", "day_of_month": 0},
        {"type": "DAILY", "time_of_day": "25:00"},
        {"type": "DAILY", "time_of_day": "09:00", "timezone": "Mars/Olympus"},
        {"type": "CRON", "cron_expression": "0 9 * *"},
        {"type": "CRON", "cron_expression": "61 9 * * *"},
        {"type": "CRON", "cron_expression": "0 9 * * 8"},
    ],
)
def test_invalid_schedules_are_rejected(data):
    with pytest.raises(ValidationError):
        validate_schedule(Schedule.from_dict(data), now=MONDAY_8AM)


def test_unknown_schedule_type():
    with pytest.raises(ValidationError):
        Schedule.from_dict({"type": "HOURLY"})
