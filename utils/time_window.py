"""
Interval arithmetic shared by the reconciler and the reports.

Wall-clock values are ``HH:MM`` strings in the organisation's timezone;
instants are timezone-aware datetimes. No function here reads the system
clock or the host timezone.
"""
import re
from datetime import datetime, date, time
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Union

import pytz

from models.errors import MalformedTimeError, InvalidIntervalError
from models.schema import ClockInClassification, EntryAttendance
from utils.config import (
    ONTIME_BUFFER_MINUTES,
    REQUIRES_APPROVAL_AFTER_MINUTES,
    STANDARD_DAY_HOURS,
    OVERTIME_MULTIPLIER,
)

MINUTES_PER_DAY = 24 * 60
HHMM_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")

WallClock = Union[str, time]
Moment = Union[str, time, datetime]


def round2(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def parse_hhmm(value: WallClock) -> time:
    if isinstance(value, time):
        return value
    if not isinstance(value, str):
        raise MalformedTimeError(f"Expected an HH:MM time, got {value!r}", value=value)
    match = HHMM_PATTERN.match(value.strip())
    if not match:
        raise MalformedTimeError(f"Invalid time format (HH:MM): {value!r}", value=value)
    return time(int(match.group(1)), int(match.group(2)))


def minutes_of_day(value: WallClock) -> int:
    parsed = parse_hhmm(value)
    return parsed.hour * 60 + parsed.minute


def _timezone(tz):
    return pytz.timezone(tz) if isinstance(tz, str) else tz


def combine_local(day: date, wall_clock: WallClock, tz) -> datetime:
    """Anchor a wall-clock time on ``day`` in ``tz`` and return it as a UTC instant."""
    local = _timezone(tz).localize(datetime.combine(day, parse_hhmm(wall_clock)))
    return local.astimezone(pytz.UTC)


def to_local(instant: datetime, tz) -> datetime:
    if instant.tzinfo is None:
        instant = pytz.UTC.localize(instant)
    return instant.astimezone(_timezone(tz))


def local_date(instant: datetime, tz) -> date:
    return to_local(instant, tz).date()


def to_hhmm(instant: datetime, tz) -> str:
    return to_local(instant, tz).strftime("%H:%M")


def whole_minutes_between(start: datetime, end: datetime) -> int:
    """Minutes from ``start`` to ``end``, floored; negative when ``end`` is earlier."""
    return int((end - start).total_seconds() // 60)


def scheduled_hours(start_time: WallClock, end_time: WallClock, unpaid_break_minutes: int = 0) -> float:
    start = minutes_of_day(start_time)
    end = minutes_of_day(end_time)
    if end <= start:
        end += MINUTES_PER_DAY
    return round2(max(0, end - start - unpaid_break_minutes) / 60)


def interval_minutes(start: Moment, end: Moment) -> float:
    if isinstance(start, datetime) and isinstance(end, datetime):
        minutes = (end - start).total_seconds() / 60
        if minutes < 0:
            raise InvalidIntervalError(
                f"Clock-out {end.isoformat()} is before clock-in {start.isoformat()}",
                start=start,
                end=end,
            )
        return minutes
    if isinstance(start, datetime) or isinstance(end, datetime):
        raise MalformedTimeError("Cannot mix instants and wall-clock times in one interval")
    minutes = minutes_of_day(end) - minutes_of_day(start)
    if minutes < 0:
        minutes += MINUTES_PER_DAY
    return float(minutes)


def _break_duration(item) -> float:
    if isinstance(item, (int, float)):
        return float(item)
    if isinstance(item, dict):
        return float(item.get("duration_minutes", item.get("duration", 0)) or 0)
    return float(getattr(item, "duration_minutes", 0) or 0)


def break_minutes(breaks: Iterable) -> float:
    return sum(_break_duration(b) for b in breaks or [])


def hours_worked(clock_in: Moment, clock_out: Moment, breaks: Iterable = ()) -> float:
    worked = interval_minutes(clock_in, clock_out) - break_minutes(breaks)
    if worked < 0:
        raise InvalidIntervalError("Break time exceeds the clocked interval", worked_minutes=worked)
    return round2(worked / 60)


def variance(worked: float, scheduled: Optional[float]) -> float:
    if not scheduled:
        return 0.0
    return round2(worked - scheduled)


def overtime_hours(worked: float, scheduled: Optional[float] = None, standard_day_hours: float = STANDARD_DAY_HOURS) -> float:
    baseline = scheduled if scheduled is not None else standard_day_hours
    return round2(max(0.0, worked - baseline))


def overtime_cost(hours: float, hourly_rate: float, multiplier: float = OVERTIME_MULTIPLIER) -> float:
    return round2(hours * hourly_rate * multiplier)


def classify_clock_in(
    clock_in_time: WallClock,
    shift_start: WallClock,
    shift_end: WallClock,
    buffer_minutes: int = ONTIME_BUFFER_MINUTES,
    approval_after_minutes: int = REQUIRES_APPROVAL_AFTER_MINUTES,
) -> ClockInClassification:
    """
    Compare a clock-in against the scheduled start.

    The offset is taken on the nearest day, so 23:50 against a 00:10 start is
    20 minutes early. Raises MalformedTimeError for any unparseable time.
    """
    clock_in = minutes_of_day(clock_in_time)
    start = minutes_of_day(shift_start)
    minutes_of_day(shift_end)

    diff = clock_in - start
    if diff > MINUTES_PER_DAY // 2:
        diff -= MINUTES_PER_DAY
    elif diff <= -MINUTES_PER_DAY // 2:
        diff += MINUTES_PER_DAY

    if diff < -buffer_minutes:
        return ClockInClassification(
            status=EntryAttendance.EARLY,
            minutes_offset=abs(diff),
            message=f"Clocked in {abs(diff)} minutes early",
        )
    if diff <= buffer_minutes:
        return ClockInClassification(status=EntryAttendance.ON_TIME, minutes_offset=0, message="Clocked in on time")
    if diff <= approval_after_minutes:
        return ClockInClassification(
            status=EntryAttendance.LATE,
            minutes_offset=diff,
            message=f"Clocked in {diff} minutes late",
        )
    return ClockInClassification(
        status=EntryAttendance.LATE,
        minutes_offset=diff,
        requires_approval=True,
        message=f"Clocked in {diff} minutes late - requires manager approval",
    )
