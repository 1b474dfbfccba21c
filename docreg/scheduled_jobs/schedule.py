"""Schedule value object and next-run computation.

All time-of-day rules are evaluated in the schedule's own IANA timezone and the
result is returned as an aware UTC datetime. ``compute_next_run`` is pure: the
same ``(schedule, reference_time)`` always yields the same instant.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger

from .enums import ScheduleType
from .errors import ValidationError


DEFAULT_TIME_OF_DAY = "10:00"

_TIME_OF_DAY_RE = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")


@dataclass(frozen=True)
class Schedule:
    type: ScheduleType
    scheduled_for: Optional[datetime] = None
    time_of_day: Optional[str] = None
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    cron_expression: Optional[str] = None
    timezone: str = "UTC"

    @property
    def is_one_shot(self) -> bool:
        return self.type in (ScheduleType.IMMEDIATE, ScheduleType.ONCE)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Schedule":
        """Build a schedule keeping only the fields relevant to its type.

        Accepts snake_case keys and the camelCase keys used by API clients.
        """

        if not isinstance(data, dict):
            raise ValidationError("Schedule must be an object.")

        raw_type = _pick(data, "type", "schedule_type", "scheduleType")
        try:
            stype = ScheduleType(str(raw_type or "").strip().upper())
        except ValueError:
            raise ValidationError(f"Unknown schedule type: {raw_type!r}") from None

        tz_name = str(_pick(data, "timezone") or "UTC").strip() or "UTC"

        if stype == ScheduleType.IMMEDIATE:
            return cls(type=stype, timezone=tz_name)

        if stype == ScheduleType.ONCE:
            return cls(
                type=stype,
                scheduled_for=_parse_datetime(_pick(data, "scheduled_for", "scheduledFor")),
                timezone=tz_name,
            )

        if stype == ScheduleType.CRON:
            expr = _pick(data, "cron_expression", "cronExpression")
            return cls(type=stype, cron_expression=str(expr).strip() if expr else None, timezone=tz_name)

        tod = _pick(data, "time_of_day", "timeOfDay")
        tod = str(tod).strip() if tod else DEFAULT_TIME_OF_DAY

        if stype == ScheduleType.DAILY:
            return cls(type=stype, time_of_day=tod, timezone=tz_name)

        if stype == ScheduleType.WEEKLY:
            return cls(
                type=stype,
                time_of_day=tod,
                day_of_week=_parse_int(_pick(data, "day_of_week", "dayOfWeek"), "day_of_week"),
                timezone=tz_name,
            )

        return cls(
            type=stype,
            time_of_day=tod,
            day_of_month=_parse_int(_pick(data, "day_of_month", "dayOfMonth"), "day_of_month"),
            timezone=tz_name,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type.value, "timezone": self.timezone}
        if self.type == ScheduleType.ONCE:
            out["scheduled_for"] = _iso(self.scheduled_for)
        elif self.type == ScheduleType.CRON:
            out["cron_expression"] = self.cron_expression
        elif self.type != ScheduleType.IMMEDIATE:
            out["time_of_day"] = self.time_of_day
            if self.type == ScheduleType.WEEKLY:
                out["day_of_week"] = self.day_of_week
            if self.type == ScheduleType.MONTHLY:
                out["day_of_month"] = self.day_of_month
        return out


def validate_schedule(schedule: Schedule, *, now: datetime) -> None:
    """Raise ValidationError unless the schedule is consistent for its type."""

    _zone(schedule.timezone)

    if schedule.type == ScheduleType.ONCE:
        if schedule.scheduled_for is None:
            raise ValidationError("ONCE schedules require scheduled_for.")
        if _as_utc(schedule.scheduled_for) <= _as_utc(now):
            raise ValidationError("scheduled_for must be in the future.")

    if schedule.type in (ScheduleType.DAILY, ScheduleType.WEEKLY, ScheduleType.MONTHLY):
        _parse_time_of_day(schedule.time_of_day)

    if schedule.type == ScheduleType.WEEKLY:
        if schedule.day_of_week is None or not 0 <= schedule.day_of_week <= 6:
            raise ValidationError("WEEKLY schedules require day_of_week in [0, 6] (Sunday = 0).")

    if schedule.type == ScheduleType.MONTHLY:
        if schedule.day_of_month is None or not 1 <= schedule.day_of_month <= 31:
            raise ValidationError("MONTHLY schedules require day_of_month in [1, 31].")

    if schedule.type == ScheduleType.CRON:
        _cron_trigger(schedule)


def compute_next_run(schedule: Schedule, reference_time: datetime) -> datetime:
    """Return the next run instant (aware UTC) for ``schedule`` after ``reference_time``.

    IMMEDIATE fires at the reference time. An overdue ONCE schedule also fires
    at the reference time; callers clear ``next_run_at`` once a one-shot job
    has run.
    """

    ref = _as_utc(reference_time)

    if schedule.type == ScheduleType.IMMEDIATE:
        return ref

    if schedule.type == ScheduleType.ONCE:
        if schedule.scheduled_for is None:
            raise ValidationError("ONCE schedules require scheduled_for.")
        target = _as_utc(schedule.scheduled_for)
        return target if target > ref else ref

    if schedule.type == ScheduleType.CRON:
        trigger = _cron_trigger(schedule)
        # Passing ref as the previous fire time makes the search strictly after ref.
        fire = trigger.get_next_fire_time(ref, ref)
        if fire is None:
            raise ValidationError(f"Cron expression never fires: {schedule.cron_expression!r}")
        return fire.astimezone(timezone.utc)

    tz = _zone(schedule.timezone)
    at = _parse_time_of_day(schedule.time_of_day)
    local_ref = ref.astimezone(tz)

    if schedule.type == ScheduleType.DAILY:
        day = local_ref.date()
        candidate = _at(day, at, tz)
        if candidate <= ref:
            candidate = _at(day + timedelta(days=1), at, tz)
        return candidate

    if schedule.type == ScheduleType.WEEKLY:
        if schedule.day_of_week is None:
            raise ValidationError("WEEKLY schedules require day_of_week.")
        # Python weekdays start on Monday; schedules count from Sunday = 0.
        today = (local_ref.weekday() + 1) % 7
        days_ahead = (int(schedule.day_of_week) - today) % 7
        day = local_ref.date() + timedelta(days=days_ahead)
        candidate = _at(day, at, tz)
        if candidate <= ref:
            candidate = _at(day + timedelta(days=7), at, tz)
        return candidate

    if schedule.day_of_month is None:
        raise ValidationError("MONTHLY schedules require day_of_month.")

    year, month = local_ref.year, local_ref.month
    while True:
        last_day = calendar.monthrange(year, month)[1]
        day = date(year, month, min(int(schedule.day_of_month), last_day))
        candidate = _at(day, at, tz)
        if candidate > ref:
            return candidate
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)


def _at(day: date, at: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, at, tzinfo=tz).astimezone(timezone.utc)


_CRON_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def _cron_trigger(schedule: Schedule) -> BaseTrigger:
    """Build the trigger for a 5-field crontab expression.

    When both day-of-month and day-of-week are restricted, a day matches if
    either field matches, as in crontab. ``CronTrigger`` alone requires both,
    so that case is an ``OrTrigger`` over the two single-field triggers.
    """

    expr = (schedule.cron_expression or "").strip()
    fields = expr.split()
    if len(fields) != 5:
        raise ValidationError(f"Cron expression must have 5 fields: {expr!r}")
    _zone(schedule.timezone)
    minute, hour, day, month, day_of_week = fields

    def build(day_field: str, dow_field: str) -> CronTrigger:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day_field,
            month=month,
            day_of_week=_cron_day_of_week(dow_field),
            timezone=schedule.timezone,
        )

    try:
        if day in ("*", "?") or day_of_week in ("*", "?"):
            return build(day, day_of_week)
        return OrTrigger([build(day, "*"), build("*", day_of_week)])
    except (ValueError, KeyError) as exc:
        raise ValidationError(f"Invalid cron expression {expr!r}: {exc}") from exc


def _cron_day_of_week(field: str) -> str:
    """Translate a crontab day-of-week field (Sunday = 0 or 7) into weekday names.

    APScheduler numbers weekdays from Monday, so numeric crontab values are
    expanded to an explicit list of names instead of being passed through.
    """

    if field in ("*", "?"):
        return "*"

    days = set()
    for part in field.split(","):
        rng, _, step_raw = part.partition("/")
        step = _cron_int(step_raw, field) if step_raw else 1
        if step < 1:
            raise ValidationError(f"Invalid day-of-week step in {field!r}")
        if rng == "*":
            lo, hi = 0, 6
        elif "-" in rng:
            lo_raw, hi_raw = rng.split("-", 1)
            lo, hi = _cron_day(lo_raw, field), _cron_day(hi_raw, field)
            if hi == 0 and lo > 0:
                hi = 7
        else:
            lo = _cron_day(rng, field)
            hi = 6 if step_raw else lo
        if lo > hi:
            raise ValidationError(f"Invalid day-of-week range in {field!r}")
        days.update(d % 7 for d in range(lo, hi + 1, step))

    if len(days) == 7:
        return "*"
    return ",".join(_CRON_DAY_NAMES[d] for d in sorted(days))


def _cron_day(raw: str, field: str) -> int:
    name = raw.strip().lower()
    if name in _CRON_DAY_NAMES:
        return _CRON_DAY_NAMES.index(name)
    value = _cron_int(name, field)
    if not 0 <= value <= 7:
        raise ValidationError(f"Day-of-week out of range in {field!r}")
    return value


def _cron_int(raw: str, field: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"Invalid cron field {field!r}") from None


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(str(name))
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {name!r}") from None


def _parse_time_of_day(raw: Optional[str]) -> time:
    m = _TIME_OF_DAY_RE.match(str(raw or ""))
    if not m:
        raise ValidationError(f"time_of_day must be HH:mm, got {raw!r}")
    return time(int(m.group(1)), int(m.group(2)))


def _parse_int(raw: Any, name: str) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer, got {raw!r}") from None


def _parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return _as_utc(raw)
    try:
        return _as_utc(datetime.fromisoformat(str(raw).strip().replace("Z", "+00:00")))
    except ValueError:
        raise ValidationError(f"Invalid timestamp: {raw!r}") from None


def _pick(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return _as_utc(dt).isoformat().replace("+00:00", "Z") if dt else None
