from datetime import datetime, date, timedelta
from typing import Optional, Tuple

from models.errors import MalformedTimeError
from models.schema import (
    AttendanceStatus,
    AttendanceVerdict,
    ShiftAssignment,
    ShiftStatus,
    TimeEntry,
)
from utils.config import AttendanceSettings, resolve_settings
from utils.helper import DocumentStore, SHIFT_ASSIGNMENTS, get_entry_for_day, get_shift
from utils.shift_matcher import has_approved_leave, start_sort_key
from utils.time_window import combine_local, parse_hhmm, whole_minutes_between

UNCLASSIFIABLE_SHIFT_STATUSES = [ShiftStatus.CANCELLED, ShiftStatus.SWAPPED]


def shift_start_instant(shift: ShiftAssignment, tz) -> datetime:
    parse_hhmm(shift.end_time)
    return combine_local(shift.date, shift.start_time, tz)


def classify_attendance(
    shift: Optional[ShiftAssignment],
    clock_in: Optional[datetime],
    now: datetime,
    settings: Optional[AttendanceSettings] = None,
    on_leave: bool = False,
) -> AttendanceVerdict:
    """
    Daily verdict for one employee and one shift.

    Approved leave beats everything else. A clock-in later than the absence
    cutoff is an absence, but minutes_late is still reported.
    """
    settings = resolve_settings(settings)
    if on_leave:
        return AttendanceVerdict(status=AttendanceStatus.ON_LEAVE, reason="Approved leave")
    if shift is None:
        return AttendanceVerdict(status=AttendanceStatus.UNSCHEDULED, reason="No shift scheduled")

    try:
        start = shift_start_instant(shift, settings.tz)
    except MalformedTimeError as exc:
        return AttendanceVerdict(status=AttendanceStatus.UNSCHEDULABLE, reason=exc.message)

    cutoff = start + timedelta(minutes=settings.absence_cutoff_minutes)

    if clock_in is None:
        if now <= cutoff:
            return AttendanceVerdict(status=AttendanceStatus.PENDING, reason="Awaiting clock-in")
        return AttendanceVerdict(status=AttendanceStatus.ABSENT, reason="No clock-in recorded")

    if clock_in <= start:
        return AttendanceVerdict(status=AttendanceStatus.ON_TIME)

    minutes_late = whole_minutes_between(start, clock_in)
    if clock_in <= cutoff:
        return AttendanceVerdict(
            status=AttendanceStatus.LATE,
            minutes_late=minutes_late,
            reason=f"{minutes_late} minutes late",
        )
    return AttendanceVerdict(
        status=AttendanceStatus.ABSENT,
        minutes_late=minutes_late,
        reason=f"Clocked in {minutes_late} minutes after shift start",
    )


def shift_for_day(store: DocumentStore, employee_id: str, day: date, entry: Optional[TimeEntry] = None) -> Optional[ShiftAssignment]:
    """The shift a retrospective classification should judge against."""
    if entry is not None and entry.shift_id:
        linked = get_shift(store, entry.shift_id)
        if linked is not None:
            return linked
    records = store.find(
        SHIFT_ASSIGNMENTS,
        {"employee_id": employee_id, "date": day, "status": {"$nin": UNCLASSIFIABLE_SHIFT_STATUSES}},
    )
    if not records:
        return None
    shifts = sorted((ShiftAssignment.model_validate(r) for r in records), key=start_sort_key)
    return shifts[0]


def classify_day(
    store: DocumentStore,
    employee_id: str,
    day: date,
    now: datetime,
    settings: Optional[AttendanceSettings] = None,
) -> Tuple[AttendanceVerdict, Optional[ShiftAssignment], Optional[TimeEntry]]:
    entry = get_entry_for_day(store, employee_id, day)
    shift = shift_for_day(store, employee_id, day, entry)
    verdict = classify_attendance(
        shift,
        entry.clock_in if entry else None,
        now,
        settings=settings,
        on_leave=has_approved_leave(store, employee_id, day),
    )
    return verdict, shift, entry
