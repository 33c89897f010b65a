"""
Batch projections over historical attendance.

Each projection replays ``attendance.classify_day`` and the interval helpers in
``utils.time_window`` so report numbers agree with what the live reconciler
recorded. Days still in progress are reported as they stand.
"""
import logging
from collections import Counter
from datetime import datetime, date
from typing import Iterator, List, Optional, Tuple

from attendance import UNCLASSIFIABLE_SHIFT_STATUSES, classify_attendance, classify_day, shift_start_instant
from models.errors import InvalidIntervalError, MalformedTimeError
from models.schema import (
    AbsenceInstance,
    AbsenceReport,
    AttendanceStatus,
    AttendanceSummary,
    AttendanceVerdict,
    DailyAttendance,
    DailyAttendanceRow,
    EmployeeAbsenceSummary,
    EmployeeLatenessSummary,
    EmployeeOvertimeSummary,
    EntryStatus,
    LatenessReport,
    LatenessStats,
    OvertimeInstance,
    OvertimeReport,
    ShiftAssignment,
    ShiftDrift,
    ShiftStatus,
    TimeEntry,
    UnrecordedLateness,
)
from utils.config import AttendanceSettings, SystemClock, resolve_settings
from utils.helper import (
    DocumentStore,
    EMPLOYEES,
    SHIFT_ASSIGNMENTS,
    TIME_ENTRIES,
    get_employee,
    get_entry,
    get_lateness_records,
    get_shift,
)
from utils.time_window import (
    hours_worked,
    interval_minutes,
    overtime_cost,
    overtime_hours,
    round2,
    scheduled_hours,
    whole_minutes_between,
)

EXPECTED_SHIFT_STATUS = {
    EntryStatus.CLOCKED_IN: ShiftStatus.IN_PROGRESS,
    EntryStatus.ON_BREAK: ShiftStatus.ON_BREAK,
    EntryStatus.CLOCKED_OUT: ShiftStatus.COMPLETED,
}

ClassifiedDay = Tuple[date, AttendanceVerdict, Optional[ShiftAssignment], Optional[TimeEntry]]


def _population(store: DocumentStore, employee_ids: Optional[List[str]]) -> List[str]:
    if employee_ids is not None:
        return list(employee_ids)
    return [record["id"] for record in store.find(EMPLOYEES, {})]


def _classified_days(
    store: DocumentStore,
    employee_id: str,
    start: date,
    end: date,
    now: datetime,
    settings: AttendanceSettings,
) -> Iterator[ClassifiedDay]:
    in_range = {"employee_id": employee_id, "date": {"$gte": start, "$lte": end}}
    shift_days = {
        r["date"]
        for r in store.find(SHIFT_ASSIGNMENTS, {**in_range, "status": {"$nin": UNCLASSIFIABLE_SHIFT_STATUSES}})
    }
    entry_days = {r["date"] for r in store.find(TIME_ENTRIES, in_range)}
    for day in sorted(shift_days | entry_days):
        verdict, shift, entry = classify_day(store, employee_id, day, now, settings)
        yield day, verdict, shift, entry


def _lateness_stats(store: DocumentStore, employee_id: str, start: date, end: date) -> LatenessStats:
    records = get_lateness_records(store, employee_id, start, end)
    total = sum(r.minutes_late for r in records)
    excused = sum(1 for r in records if r.excused)
    return LatenessStats(
        total_incidents=len(records),
        excused_incidents=excused,
        unexcused_incidents=len(records) - excused,
        total_minutes_late=total,
        average_minutes_late=round2(total / len(records)) if records else 0.0,
    )


def lateness_summary(
    store: DocumentStore,
    start: date,
    end: date,
    employee_ids: Optional[List[str]] = None,
    now: Optional[datetime] = None,
    settings: Optional[AttendanceSettings] = None,
) -> LatenessReport:
    """
    Late days per the daily classification, alongside the LatenessRecords
    written at clock-in. Clock-ins past the record grace period with no
    LatenessRecord on file are listed under ``unrecorded``.
    """
    settings = resolve_settings(settings)
    now = now or SystemClock().now()
    report = LatenessReport(start=start, end=end)

    for employee_id in _population(store, employee_ids):
        summary = EmployeeLatenessSummary(employee_id=employee_id)
        recorded_days = {r.date for r in get_lateness_records(store, employee_id, start, end)}

        for day, verdict, shift, entry in _classified_days(store, employee_id, start, end, now, settings):
            if verdict.status == AttendanceStatus.UNSCHEDULABLE:
                report.unschedulable.append(f"{employee_id} {day}: {verdict.reason}")
                continue
            if verdict.status == AttendanceStatus.LATE:
                summary.late_days += 1
                summary.total_minutes_late += verdict.minutes_late
            if verdict.status == AttendanceStatus.ON_LEAVE or shift is None or entry is None or entry.clock_in is None:
                continue
            minutes_late = whole_minutes_between(shift_start_instant(shift, settings.tz), entry.clock_in)
            if minutes_late > settings.lateness_record_grace_minutes and day not in recorded_days:
                report.unrecorded.append(
                    UnrecordedLateness(
                        employee_id=employee_id,
                        date=day,
                        entry_id=entry.id,
                        shift_id=shift.id,
                        minutes_late=minutes_late,
                    )
                )

        if summary.late_days:
            summary.average_minutes_late = round2(summary.total_minutes_late / summary.late_days)
        summary.records = _lateness_stats(store, employee_id, start, end)
        report.employees.append(summary)

    if report.unrecorded:
        logging.warning(f"{len(report.unrecorded)} late clock-ins between {start} and {end} have no lateness record")
    return report


def overtime_summary(
    store: DocumentStore,
    start: date,
    end: date,
    employee_ids: Optional[List[str]] = None,
    settings: Optional[AttendanceSettings] = None,
) -> OvertimeReport:
    settings = resolve_settings(settings)
    report = OvertimeReport(start=start, end=end)

    for employee_id in _population(store, employee_ids):
        employee = get_employee(store, employee_id)
        rate = employee.hourly_rate if employee else 0.0
        summary = EmployeeOvertimeSummary(employee_id=employee_id, hourly_rate=rate)
        entries = store.find(
            TIME_ENTRIES,
            {"employee_id": employee_id, "date": {"$gte": start, "$lte": end}, "status": EntryStatus.CLOCKED_OUT},
        )
        for record in sorted(entries, key=lambda r: r["date"]):
            entry = TimeEntry.model_validate(record)
            try:
                worked = hours_worked(entry.clock_in, entry.clock_out, entry.breaks)
            except InvalidIntervalError as exc:
                logging.error(f"Skipping time entry {entry.id} in overtime report: {exc.message}")
                continue

            scheduled = None
            shift = get_shift(store, entry.shift_id) if entry.shift_id else None
            if shift is not None:
                try:
                    scheduled = scheduled_hours(shift.start_time, shift.end_time, shift.break_duration)
                except MalformedTimeError as exc:
                    logging.warning(f"Shift {shift.id} unusable for overtime ({exc.message}); using standard day")

            extra = overtime_hours(worked, scheduled, settings.standard_day_hours)
            if extra <= 0:
                continue
            cost = overtime_cost(extra, rate, settings.overtime_multiplier)
            report.instances.append(
                OvertimeInstance(
                    employee_id=employee_id,
                    date=entry.date,
                    entry_id=entry.id,
                    hours_worked=worked,
                    scheduled_hours=scheduled,
                    overtime_hours=extra,
                    cost=cost,
                )
            )
            summary.instances += 1
            summary.total_overtime_hours = round2(summary.total_overtime_hours + extra)
            summary.total_cost = round2(summary.total_cost + cost)
        report.employees.append(summary)

    report.employees.sort(key=lambda s: s.total_overtime_hours, reverse=True)
    return report


def absence_summary(
    store: DocumentStore,
    start: date,
    end: date,
    employee_ids: Optional[List[str]] = None,
    now: Optional[datetime] = None,
    settings: Optional[AttendanceSettings] = None,
) -> AbsenceReport:
    settings = resolve_settings(settings)
    now = now or SystemClock().now()
    report = AbsenceReport(start=start, end=end)

    for employee_id in _population(store, employee_ids):
        summary = EmployeeAbsenceSummary(employee_id=employee_id)
        for day, verdict, shift, entry in _classified_days(store, employee_id, start, end, now, settings):
            if shift is None:
                continue
            if verdict.status == AttendanceStatus.ON_LEAVE:
                without_leave = classify_attendance(shift, entry.clock_in if entry else None, now, settings=settings)
                if without_leave.status == AttendanceStatus.ABSENT:
                    summary.suppressed_by_leave += 1
                continue
            if verdict.status == AttendanceStatus.ABSENT:
                summary.absent_days += 1
                report.absences.append(
                    AbsenceInstance(
                        employee_id=employee_id,
                        date=day,
                        shift_id=shift.id,
                        reason=verdict.reason,
                        minutes_late=verdict.minutes_late,
                    )
                )
        report.employees.append(summary)
    return report


def _provisional_hours(entry: TimeEntry, now: datetime) -> float:
    breaks = list(entry.breaks)
    if entry.on_break_start is not None:
        breaks.append(interval_minutes(entry.on_break_start, now))
    return hours_worked(entry.clock_in, now, breaks)


def attendance_summary(
    store: DocumentStore,
    employee_id: str,
    start: date,
    end: date,
    now: Optional[datetime] = None,
) -> AttendanceSummary:
    """
    Timesheet totals for one employee. Closed entries give worked hours and
    the shortfall against their shift; open entries are measured up to
    ``now`` and kept out of the closed totals.
    """
    now = now or SystemClock().now()
    records = store.find(TIME_ENTRIES, {"employee_id": employee_id, "date": {"$gte": start, "$lte": end}})
    entries = [TimeEntry.model_validate(r) for r in sorted(records, key=lambda r: r["date"])]
    summary = AttendanceSummary(
        employee_id=employee_id,
        total_days=len(entries),
        counts=dict(Counter(e.attendance_status.value for e in entries)),
    )

    closed = [e for e in entries if e.status == EntryStatus.CLOCKED_OUT]
    for entry in entries:
        if entry.status == EntryStatus.CLOCKED_OUT:
            if entry.shift_id and entry.variance < 0:
                summary.short_days += 1
                summary.under_hours = round2(summary.under_hours - entry.variance)
            continue
        if entry.clock_in is None:
            continue
        try:
            hours = _provisional_hours(entry, now)
        except InvalidIntervalError as exc:
            logging.warning(f"Open time entry {entry.id} not measurable at {now.isoformat()}: {exc.message}")
            continue
        summary.open_entries += 1
        summary.provisional_hours = round2(summary.provisional_hours + hours)

    summary.total_hours = round2(sum(e.hours_worked for e in closed))
    summary.average_hours = round2(summary.total_hours / len(closed)) if closed else 0.0
    return summary


def daily_attendance(
    store: DocumentStore,
    day: date,
    now: Optional[datetime] = None,
    settings: Optional[AttendanceSettings] = None,
) -> DailyAttendance:
    settings = resolve_settings(settings)
    now = now or SystemClock().now()
    shifts = store.find(SHIFT_ASSIGNMENTS, {"date": day, "status": {"$nin": UNCLASSIFIABLE_SHIFT_STATUSES}})
    board = DailyAttendance(date=day)

    seen = set()
    for record in shifts:
        employee_id = record["employee_id"]
        if employee_id in seen:
            continue
        seen.add(employee_id)
        board.total_scheduled += 1

        verdict, shift, entry = classify_day(store, employee_id, day, now, settings)
        if verdict.status == AttendanceStatus.ON_LEAVE:
            board.on_leave += 1
            continue
        row = DailyAttendanceRow(
            employee_id=employee_id,
            shift_id=shift.id,
            start_time=shift.start_time,
            end_time=shift.end_time,
            location=shift.location,
            status=verdict.status,
            minutes_late=verdict.minutes_late,
            reason=verdict.reason,
            clock_in=entry.clock_in if entry else None,
        )
        board.buckets.setdefault(verdict.status.value, []).append(row)
    return board


def detect_shift_drift(store: DocumentStore, start: date, end: date) -> List[ShiftDrift]:
    """TimeEntry/ShiftAssignment pairs whose links or statuses disagree."""
    drift: List[ShiftDrift] = []
    in_range = {"date": {"$gte": start, "$lte": end}}

    for record in store.find(TIME_ENTRIES, {**in_range, "shift_id": {"$ne": None}}):
        entry = TimeEntry.model_validate(record)
        shift = get_shift(store, entry.shift_id)
        if shift is None:
            drift.append(ShiftDrift(entry_id=entry.id, shift_id=entry.shift_id, entry_status=entry.status, problem="linked shift missing"))
            continue
        if shift.time_entry_id != entry.id:
            drift.append(
                ShiftDrift(
                    entry_id=entry.id,
                    shift_id=shift.id,
                    entry_status=entry.status,
                    shift_status=shift.status,
                    problem="shift does not link back to entry",
                )
            )
        elif shift.status != EXPECTED_SHIFT_STATUS[entry.status]:
            drift.append(
                ShiftDrift(
                    entry_id=entry.id,
                    shift_id=shift.id,
                    entry_status=entry.status,
                    shift_status=shift.status,
                    problem="status mismatch",
                )
            )

    for record in store.find(SHIFT_ASSIGNMENTS, {**in_range, "time_entry_id": {"$ne": None}}):
        shift = ShiftAssignment.model_validate(record)
        if get_entry(store, shift.time_entry_id) is None:
            drift.append(ShiftDrift(shift_id=shift.id, shift_status=shift.status, problem="linked time entry missing"))
    return drift
