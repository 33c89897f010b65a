import logging
from datetime import datetime, date, timedelta
from typing import Optional, Dict, List, Callable, Union, Any

from attendance import classify_attendance, shift_for_day, shift_start_instant
from models.errors import (
    AlreadyActiveError,
    DayAlreadyClosedError,
    EmployeeInactiveError,
    EmployeeNotFoundError,
    EntryNotFoundError,
    LatenessAlreadyExcusedError,
    LatenessRecordNotFoundError,
    MalformedTimeError,
    NoActiveEntryError,
    NotClockedInError,
    NotOnBreakError,
)
from models.schema import (
    AttendanceStatus,
    BreakRecord,
    ClockInResult,
    DeleteEntryResult,
    Employee,
    EntryAttendance,
    EntryStatus,
    ForceResetResult,
    GpsCapture,
    LatenessRecord,
    Notification,
    ShiftAssignment,
    ShiftStatus,
    TimeEntry,
    OPEN_ENTRY_STATUSES,
)
from utils.config import AttendanceSettings, KeyedLock, SystemClock, resolve_settings
from utils.helper import (
    DocumentStore,
    LATENESS_RECORDS,
    SHIFT_ASSIGNMENTS,
    TIME_ENTRIES,
    dispatch_notification,
    get_employee,
    get_entry,
    get_entry_for_day,
    get_open_entry,
    insert_lateness_record,
    save_entry,
)
from utils.shift_matcher import find_shift, has_approved_leave
from utils.time_window import (
    classify_clock_in,
    combine_local,
    hours_worked,
    interval_minutes,
    local_date,
    round2,
    scheduled_hours,
    to_hhmm,
    variance,
    whole_minutes_between,
)

Moment = Union[str, datetime]


class AttendanceReconciler:
    """
    Owns the clock-in / break / clock-out lifecycle of one TimeEntry per
    employee per day and keeps the linked ShiftAssignment in step.

    The TimeEntry write is authoritative. Shift-status syncs, lateness
    records and notifications are side effects: their failures are logged
    and never reach the caller.
    """

    def __init__(
        self,
        store: DocumentStore,
        settings: Optional[AttendanceSettings] = None,
        clock=None,
        notifier: Optional[Callable[[Notification], Any]] = None,
    ):
        self.store = store
        self.settings = resolve_settings(settings)
        self.clock = clock or SystemClock()
        self.notifier = notifier or (lambda notification: dispatch_notification(store, notification))
        self._locks = KeyedLock()

    @property
    def tz(self):
        return self.settings.tz

    def today(self) -> date:
        return local_date(self.clock.now(), self.tz)

    def _sync_shift(self, shift_id: str, patch: Dict) -> bool:
        try:
            shift = self.store.update_by_id(SHIFT_ASSIGNMENTS, shift_id, patch)
        except Exception:
            logging.exception(f"Shift status sync failed for shift_id: {shift_id}")
            return False
        if shift is None:
            logging.warning(f"Shift status sync skipped, shift not found: {shift_id}")
            return False
        return True

    def _notify(self, user_id: Optional[str], title: str, message: str, type: str = "system", priority: str = "medium") -> None:
        try:
            self.notifier(
                Notification(
                    user_id=user_id,
                    type=type,
                    title=title,
                    message=message,
                    priority=priority,
                    created_at=self.clock.now(),
                )
            )
        except Exception:
            logging.exception(f"Notification dispatch failed: {title}")

    def _record_lateness(self, entry: TimeEntry, shift: ShiftAssignment, now: datetime, actor: Optional[str]) -> Optional[LatenessRecord]:
        scheduled_start = shift_start_instant(shift, self.tz)
        minutes_late = whole_minutes_between(scheduled_start, now)
        if minutes_late <= self.settings.lateness_record_grace_minutes:
            return None
        record = LatenessRecord(
            employee_id=entry.employee_id,
            date=entry.date,
            scheduled_start=scheduled_start,
            actual_start=now,
            minutes_late=minutes_late,
            shift_id=shift.id,
            created_by=actor,
        )
        try:
            insert_lateness_record(self.store, record)
        except Exception:
            logging.exception(f"Failed to create lateness record for employee_id: {entry.employee_id}")
            return None
        logging.info(f"Lateness record created for employee_id: {entry.employee_id}: {record.minutes_late} minutes late")
        if record.minutes_late > self.settings.significant_lateness_minutes:
            self._notify(
                None,
                "Significant Lateness Detected",
                f"Employee {entry.employee_id} was {record.minutes_late} minutes late on {entry.date}",
                type="lateness",
            )
        return record

    def _require_active_employee(self, employee_id: str) -> Employee:
        employee = get_employee(self.store, employee_id)
        if employee is None:
            raise EmployeeNotFoundError(f"Employee not found: {employee_id}", employee_id=employee_id)
        if not employee.is_active or employee.status != "Active":
            raise EmployeeInactiveError(
                f"Employee {employee_id} is not active or has been terminated",
                employee_id=employee_id,
            )
        return employee

    def _locate(self, employee_id: str, work_date: Optional[date]) -> Optional[TimeEntry]:
        if work_date is not None:
            return get_entry_for_day(self.store, employee_id, work_date)
        # an overnight entry stays open past midnight, so look for it first
        return get_open_entry(self.store, employee_id) or get_entry_for_day(self.store, employee_id, self.today())

    def _reread(self, entry: TimeEntry) -> Optional[TimeEntry]:
        return get_entry(self.store, entry.id)

    def _stamp_gps(self, gps: Union[GpsCapture, Dict, None], now: datetime) -> Optional[GpsCapture]:
        if gps is None:
            return None
        capture = gps if isinstance(gps, GpsCapture) else GpsCapture.model_validate(gps)
        if capture.captured_at is None:
            capture = capture.model_copy(update={"captured_at": now})
        return capture

    def _scheduled_hours(self, shift: ShiftAssignment) -> float:
        return scheduled_hours(shift.start_time, shift.end_time, shift.break_duration)

    def _close_break(self, entry: TimeEntry, now: datetime) -> BreakRecord:
        duration = interval_minutes(entry.on_break_start, now)
        record = BreakRecord(start=entry.on_break_start, end=now, duration_minutes=round2(duration), category="break")
        entry.breaks.append(record)
        entry.on_break_start = None
        return record

    def _close_entry(self, entry: TimeEntry, now: datetime, gps=None) -> TimeEntry:
        if entry.status == EntryStatus.ON_BREAK and entry.on_break_start is not None:
            self._close_break(entry, now)
        worked = hours_worked(entry.clock_in, now, entry.breaks)
        entry.clock_out = now
        entry.status = EntryStatus.CLOCKED_OUT
        entry.on_break_start = None
        entry.hours_worked = worked
        entry.variance = variance(worked, entry.scheduled_hours if entry.shift_id else None)
        gps_out = self._stamp_gps(gps, now)
        if gps_out is not None:
            entry.gps_out = gps_out
        save_entry(self.store, entry)
        if entry.shift_id:
            self._sync_shift(entry.shift_id, {"status": ShiftStatus.COMPLETED, "actual_end_time": to_hhmm(now, self.tz)})
        return entry

    def clock_in(
        self,
        employee_id: str,
        work_date: Optional[date] = None,
        location: Optional[str] = None,
        work_type: Optional[str] = None,
        gps: Union[GpsCapture, Dict, None] = None,
        actor: Optional[str] = None,
    ) -> ClockInResult:
        now = self.clock.now()
        work_date = work_date or local_date(now, self.tz)
        self._require_active_employee(employee_id)

        with self._locks.hold((employee_id, work_date)):
            existing = get_entry_for_day(self.store, employee_id, work_date)
            if existing is not None and existing.status in OPEN_ENTRY_STATUSES:
                raise AlreadyActiveError(
                    f"Employee is currently {existing.status.value.replace('_', ' ')}. Please clock out first.",
                    entry_id=existing.id,
                )
            if existing is not None:
                raise DayAlreadyClosedError(
                    f"Employee already completed a shift on {work_date}",
                    entry_id=existing.id,
                )

            entry = TimeEntry(
                employee_id=employee_id,
                date=work_date,
                clock_in=now,
                status=EntryStatus.CLOCKED_IN,
                location=location or "Office",
                work_type=work_type or "Regular",
                gps_in=self._stamp_gps(gps, now),
                created_by=actor,
            )

            match = find_shift(self.store, employee_id, work_date, location)
            shift = match.shift if match else None
            classification = None
            if shift is not None:
                entry.shift_id = shift.id
                try:
                    entry.scheduled_hours = self._scheduled_hours(shift)
                    classification = classify_clock_in(
                        to_hhmm(now, self.tz),
                        shift.start_time,
                        shift.end_time,
                        buffer_minutes=self.settings.ontime_buffer_minutes,
                        approval_after_minutes=self.settings.requires_approval_after_minutes,
                    )
                    entry.attendance_status = classification.status
                    entry.requires_approval = classification.requires_approval
                except MalformedTimeError as exc:
                    logging.warning(f"Shift {shift.id} has unusable times ({exc.message}); clock-in recorded as unschedulable")
                    entry.attendance_status = EntryAttendance.UNSCHEDULABLE
            else:
                entry.attendance_status = EntryAttendance.UNSCHEDULED

            save_entry(self.store, entry)
            logging.info(f"Clock-in recorded for employee_id: {employee_id} on {work_date} ({entry.attendance_status.value})")

            lateness = None
            if shift is not None:
                self._sync_shift(
                    shift.id,
                    {
                        "status": ShiftStatus.IN_PROGRESS,
                        "actual_start_time": to_hhmm(now, self.tz),
                        "time_entry_id": entry.id,
                    },
                )
                if entry.attendance_status != EntryAttendance.UNSCHEDULABLE:
                    lateness = self._record_lateness(entry, shift, now, actor)

        self._notify(employee_id, "Clocked In", f"Clocked in at {to_hhmm(now, self.tz)}")
        return ClockInResult(
            entry=entry,
            shift=shift,
            classification=classification,
            lateness_record=lateness,
            location_mismatch=match.location_mismatch if match else False,
        )

    def start_break(self, employee_id: str, work_date: Optional[date] = None) -> TimeEntry:
        entry = self._locate(employee_id, work_date)
        if entry is None:
            raise NotClockedInError("No time entry found. Employee must clock in first.", employee_id=employee_id)

        with self._locks.hold((employee_id, entry.date)):
            entry = self._reread(entry)
            if entry is None or entry.status == EntryStatus.CLOCKED_OUT:
                raise NotClockedInError("Already clocked out. Cannot start break.", employee_id=employee_id)
            if entry.status == EntryStatus.ON_BREAK:
                raise NotClockedInError("Already on break", employee_id=employee_id)

            now = self.clock.now()
            entry.status = EntryStatus.ON_BREAK
            entry.on_break_start = now
            save_entry(self.store, entry)
            if entry.shift_id:
                self._sync_shift(entry.shift_id, {"status": ShiftStatus.ON_BREAK})

        logging.info(f"Break started for employee_id: {employee_id}")
        self._notify(employee_id, "Break Started", f"Break started at {to_hhmm(now, self.tz)}", priority="low")
        return entry

    def resume_work(self, employee_id: str, work_date: Optional[date] = None) -> TimeEntry:
        entry = self._locate(employee_id, work_date)
        if entry is None:
            raise NotOnBreakError("No time entry found", employee_id=employee_id)

        with self._locks.hold((employee_id, entry.date)):
            entry = self._reread(entry)
            if entry is None or entry.status != EntryStatus.ON_BREAK or entry.on_break_start is None:
                raise NotOnBreakError("Not on break", employee_id=employee_id)

            now = self.clock.now()
            self._close_break(entry, now)
            entry.status = EntryStatus.CLOCKED_IN
            save_entry(self.store, entry)
            if entry.shift_id:
                self._sync_shift(entry.shift_id, {"status": ShiftStatus.IN_PROGRESS})

        logging.info(f"Break ended for employee_id: {employee_id}")
        self._notify(employee_id, "Break Ended", f"Break ended at {to_hhmm(now, self.tz)}")
        return entry

    def clock_out(self, employee_id: str, work_date: Optional[date] = None, gps: Union[GpsCapture, Dict, None] = None) -> TimeEntry:
        entry = self._locate(employee_id, work_date)
        if entry is None or entry.status not in OPEN_ENTRY_STATUSES:
            raise NoActiveEntryError("Employee is not clocked in", employee_id=employee_id)

        with self._locks.hold((employee_id, entry.date)):
            entry = self._reread(entry)
            if entry is None or entry.status not in OPEN_ENTRY_STATUSES:
                raise NoActiveEntryError("Already clocked out", employee_id=employee_id)
            now = self.clock.now()
            self._close_entry(entry, now, gps)

        logging.info(f"Clock-out recorded for employee_id: {employee_id}: {entry.hours_worked}h worked")
        self._notify(employee_id, "Clocked Out", f"Clocked out at {to_hhmm(now, self.tz)}")
        return entry

    def force_reset(self, employee_id: str, work_date: Optional[date] = None, actor: Optional[str] = None) -> ForceResetResult:
        entry = self._locate(employee_id, work_date)
        if entry is None:
            raise NoActiveEntryError("No time entry found for this employee", employee_id=employee_id)

        with self._locks.hold((employee_id, entry.date)):
            entry = self._reread(entry)
            if entry is None:
                raise NoActiveEntryError("No time entry found for this employee", employee_id=employee_id)
            if entry.status == EntryStatus.CLOCKED_OUT:
                return ForceResetResult(reset=False, message="Nothing to reset", entry=entry)
            now = self.clock.now()
            self._close_entry(entry, now)

        logging.warning(f"Force reset by {actor or 'admin'} for employee_id: {employee_id} on {entry.date}")
        self._notify(employee_id, "Clock Reset", f"Your clock status was reset at {to_hhmm(now, self.tz)}")
        return ForceResetResult(reset=True, message="Employee clock status has been reset", entry=entry)

    def delete_entry(self, entry_id: str, actor: Optional[str] = None) -> DeleteEntryResult:
        entry = get_entry(self.store, entry_id)
        if entry is None:
            raise EntryNotFoundError(f"Time entry not found: {entry_id}", entry_id=entry_id)

        with self._locks.hold((entry.employee_id, entry.date)):
            if not self.store.delete_by_id(TIME_ENTRIES, entry_id):
                raise EntryNotFoundError(f"Time entry not found: {entry_id}", entry_id=entry_id)
            shift_reset = False
            if entry.shift_id:
                shift_reset = self._sync_shift(
                    entry.shift_id,
                    {
                        "status": ShiftStatus.SCHEDULED,
                        "actual_start_time": None,
                        "actual_end_time": None,
                        "time_entry_id": None,
                    },
                )

        logging.info(f"Time entry {entry_id} deleted by {actor or 'admin'}")
        return DeleteEntryResult(deleted=True, entry_id=entry_id, shift_reset=shift_reset)

    def _anchor(self, work_date: date, value: Moment) -> datetime:
        if isinstance(value, datetime):
            return value
        return combine_local(work_date, value, self.tz)

    def _manual_break(self, work_date: date, item: Union[BreakRecord, Dict]) -> BreakRecord:
        record = item if isinstance(item, BreakRecord) else None
        if record is None:
            data = dict(item)
            start = data.pop("start", None)
            end = data.pop("end", None)
            if start is not None and end is not None:
                minutes = interval_minutes(start, end)
                start, end = self._anchor(work_date, start), self._anchor(work_date, end)
                if end < start:
                    end = end + timedelta(days=1)
                data.setdefault("duration_minutes", round2(minutes))
            if "duration" in data:
                data.setdefault("duration_minutes", data.pop("duration"))
            record = BreakRecord(start=start, end=end, **data)
        return record

    def manual_entry(
        self,
        employee_id: str,
        work_date: date,
        clock_in: Moment,
        clock_out: Optional[Moment] = None,
        breaks: Optional[List[Union[BreakRecord, Dict]]] = None,
        location: Optional[str] = None,
        work_type: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> TimeEntry:
        if get_employee(self.store, employee_id) is None:
            raise EmployeeNotFoundError(f"Employee not found: {employee_id}", employee_id=employee_id)

        started = self._anchor(work_date, clock_in)
        ended = None
        if clock_out is not None:
            ended = self._anchor(work_date, clock_out)
            if not isinstance(clock_out, datetime) and ended <= started:
                # wall-clock pair across midnight
                ended = self._anchor(work_date + timedelta(days=1), clock_out)
        break_records = [self._manual_break(work_date, b) for b in breaks or []]
        worked = hours_worked(started, ended, break_records) if ended is not None else 0.0

        with self._locks.hold((employee_id, work_date)):
            existing = get_entry_for_day(self.store, employee_id, work_date)
            shift = shift_for_day(self.store, employee_id, work_date, existing)

            entry = TimeEntry(
                id=existing.id if existing else None,
                employee_id=employee_id,
                date=work_date,
                clock_in=started,
                clock_out=ended,
                breaks=break_records,
                status=EntryStatus.CLOCKED_OUT if ended is not None else EntryStatus.CLOCKED_IN,
                hours_worked=worked,
                location=location or (existing.location if existing else "Office"),
                work_type=work_type or (existing.work_type if existing else "Regular"),
                is_manual_entry=True,
                created_by=actor,
                attendance_status=EntryAttendance.UNSCHEDULED,
            )
            if shift is not None:
                entry.shift_id = shift.id
                try:
                    entry.scheduled_hours = self._scheduled_hours(shift)
                    classification = classify_clock_in(
                        to_hhmm(started, self.tz),
                        shift.start_time,
                        shift.end_time,
                        buffer_minutes=self.settings.ontime_buffer_minutes,
                        approval_after_minutes=self.settings.requires_approval_after_minutes,
                    )
                    entry.attendance_status = classification.status
                    entry.requires_approval = classification.requires_approval
                except MalformedTimeError as exc:
                    logging.warning(f"Shift {shift.id} has unusable times ({exc.message})")
                    entry.attendance_status = EntryAttendance.UNSCHEDULABLE
                if ended is not None:
                    entry.variance = variance(worked, entry.scheduled_hours)

            save_entry(self.store, entry)
            if shift is not None:
                patch = {
                    "status": ShiftStatus.COMPLETED if ended is not None else ShiftStatus.IN_PROGRESS,
                    "actual_start_time": to_hhmm(started, self.tz),
                    "actual_end_time": to_hhmm(ended, self.tz) if ended is not None else None,
                    "time_entry_id": entry.id,
                }
                self._sync_shift(shift.id, patch)

        logging.info(f"Manual time entry saved for employee_id: {employee_id} on {work_date} by {actor or 'admin'}")
        return entry

    def excuse_lateness(self, record_id: str, actor: str, reason: str) -> LatenessRecord:
        found = self.store.find_one(LATENESS_RECORDS, {"id": record_id})
        if found is None:
            raise LatenessRecordNotFoundError(f"Lateness record not found: {record_id}", record_id=record_id)
        record = LatenessRecord.model_validate(found)
        if record.excused:
            raise LatenessAlreadyExcusedError(f"Lateness record {record_id} is already excused", record_id=record_id)
        updated = self.store.update_by_id(
            LATENESS_RECORDS,
            record_id,
            {"excused": True, "excused_by": actor, "excused_at": self.clock.now(), "excuse_reason": reason},
        )
        logging.info(f"Lateness record {record_id} excused by {actor}")
        self._notify(record.employee_id, "Lateness Excused", f"Your lateness on {record.date} was excused")
        return LatenessRecord.model_validate(updated)

    def mark_missed_shifts(self, day: Optional[date] = None) -> int:
        """Flag Scheduled shifts with no clock-in past the absence cutoff as Missed."""
        now = self.clock.now()
        day = day or local_date(now, self.tz) - timedelta(days=1)
        records = self.store.find(SHIFT_ASSIGNMENTS, {"date": day, "status": ShiftStatus.SCHEDULED})
        missed = 0
        for record in records:
            shift = ShiftAssignment.model_validate(record)
            entry = get_entry_for_day(self.store, shift.employee_id, day)
            if entry is not None:
                continue
            verdict = classify_attendance(
                shift,
                None,
                now,
                settings=self.settings,
                on_leave=has_approved_leave(self.store, shift.employee_id, day),
            )
            if verdict.status != AttendanceStatus.ABSENT:
                continue
            if self._sync_shift(shift.id, {"status": ShiftStatus.MISSED, "notes": f"{shift.notes}\nMarked as absent - did not clock in".strip()}):
                missed += 1
                self._notify(
                    None,
                    "Employee Absence Detected",
                    f"Employee {shift.employee_id} was absent on {day} (Shift: {shift.start_time} - {shift.end_time})",
                    type="absence",
                    priority="high",
                )
        logging.info(f"Missed-shift sweep for {day}: {missed} of {len(records)} scheduled shifts marked missed")
        return missed
