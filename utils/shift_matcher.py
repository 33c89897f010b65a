import logging
from datetime import date
from typing import Optional, List

from models.errors import MalformedTimeError
from models.schema import ShiftAssignment, ShiftMatch, LeaveRecord, MATCHABLE_SHIFT_STATUSES
from utils.helper import DocumentStore, SHIFT_ASSIGNMENTS, LEAVE_RECORDS
from utils.time_window import minutes_of_day


def start_sort_key(shift: ShiftAssignment) -> int:
    try:
        return minutes_of_day(shift.start_time)
    except MalformedTimeError:
        # unparseable starts sort last; the classifier reports them
        return 10 ** 6


def candidate_shifts(store: DocumentStore, employee_id: str, day: date) -> List[ShiftAssignment]:
    records = store.find(
        SHIFT_ASSIGNMENTS,
        {"employee_id": employee_id, "date": day, "status": {"$in": MATCHABLE_SHIFT_STATUSES}},
    )
    shifts = [ShiftAssignment.model_validate(r) for r in records]
    # sorted() is stable, so equal starts keep insertion order
    return sorted(shifts, key=start_sort_key)


def find_shift(
    store: DocumentStore,
    employee_id: str,
    day: date,
    preferred_location: Optional[str] = None,
) -> Optional[ShiftMatch]:
    shifts = candidate_shifts(store, employee_id, day)
    if not shifts:
        return None
    if len(shifts) > 1:
        logging.warning(f"{len(shifts)} open shifts for employee_id: {employee_id} on {day}; picking one")

    if preferred_location:
        for shift in shifts:
            if shift.location == preferred_location:
                return ShiftMatch(shift=shift)

    shift = shifts[0]
    mismatch = bool(preferred_location) and shift.location != preferred_location
    if mismatch:
        logging.info(f"Location mismatch for employee_id: {employee_id}: clocked at {preferred_location}, shift at {shift.location}")
    return ShiftMatch(shift=shift, location_mismatch=mismatch)


def get_approved_leave(store: DocumentStore, employee_id: str, day: date) -> Optional[LeaveRecord]:
    record = store.find_one(
        LEAVE_RECORDS,
        {
            "employee_id": employee_id,
            "status": "approved",
            "start_date": {"$lte": day},
            "end_date": {"$gte": day},
        },
    )
    return LeaveRecord.model_validate(record) if record else None


def has_approved_leave(store: DocumentStore, employee_id: str, day: date) -> bool:
    return get_approved_leave(store, employee_id, day) is not None
