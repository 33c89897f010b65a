import threading
from datetime import datetime, date, timedelta

import pytest
import pytz

from main import AttendanceReconciler
from attendance import classify_day
from models.errors import (
    AlreadyActiveError,
    DayAlreadyClosedError,
    EmployeeInactiveError,
    EmployeeNotFoundError,
    InvalidIntervalError,
    LatenessAlreadyExcusedError,
    NoActiveEntryError,
    NotClockedInError,
    NotOnBreakError,
)
from models.schema import Employee, EntryAttendance, EntryStatus, LeaveRecord, ShiftAssignment, ShiftStatus
from utils.config import AttendanceSettings, FixedClock, KeyedLock
from utils.helper import (
    EMPLOYEES,
    LATENESS_RECORDS,
    LEAVE_RECORDS,
    NOTIFICATIONS,
    SHIFT_ASSIGNMENTS,
    TIME_ENTRIES,
    InMemoryStore,
    get_entry,
    get_shift,
)

DAY = date(2025, 1, 15)
NEXT_DAY = DAY + timedelta(days=1)


def at(hour, minute=0, day=DAY):
    return pytz.UTC.localize(datetime(day.year, day.month, day.day, hour, minute))


store = InMemoryStore()
clock = FixedClock(at(9))
settings = AttendanceSettings(org_timezone="Europe/London")
reconciler = AttendanceReconciler(store, settings=settings, clock=clock)


def setup_function():
    global reconciler
    store.clear()
    clock.set(at(9))
    reconciler = AttendanceReconciler(store, settings=settings, clock=clock)
    store.insert(EMPLOYEES, Employee(id="emp-1", name="Ada", hourly_rate=20.0).model_dump())
    store.insert(EMPLOYEES, Employee(id="emp-2", name="Grace", is_active=False, status="Terminated").model_dump())


def add_shift(start="09:00", end="17:00", day=DAY, employee_id="emp-1", **kwargs):
    shift = ShiftAssignment(employee_id=employee_id, date=day, start_time=start, end_time=end, **kwargs)
    return store.insert(SHIFT_ASSIGNMENTS, shift.model_dump())


class ShiftWriteFailingStore(InMemoryStore):
    def update_by_id(self, collection, id, patch):
        if collection == SHIFT_ASSIGNMENTS:
            raise ConnectionError("shift collection unavailable")
        return super().update_by_id(collection, id, patch)


def test_regular_in_and_out():
    shift_id = add_shift()

    result = reconciler.clock_in("emp-1")
    assert result.entry.status == EntryStatus.CLOCKED_IN
    assert result.entry.attendance_status == EntryAttendance.ON_TIME
    assert result.entry.shift_id == shift_id
    assert result.lateness_record is None

    shift = get_shift(store, shift_id)
    assert shift.status == ShiftStatus.IN_PROGRESS
    assert shift.actual_start_time == "09:00"
    assert shift.time_entry_id == result.entry.id

    clock.set(at(17))
    entry = reconciler.clock_out("emp-1")
    assert entry.status == EntryStatus.CLOCKED_OUT
    assert entry.hours_worked == 8.0
    assert entry.scheduled_hours == 8.0
    assert entry.variance == 0.0
    assert get_shift(store, shift_id).status == ShiftStatus.COMPLETED


def test_late_in_past_grace_creates_lateness_record():
    add_shift()
    clock.set(at(9, 7))

    result = reconciler.clock_in("emp-1")

    assert result.classification.status == EntryAttendance.ON_TIME
    assert result.lateness_record is not None
    assert result.lateness_record.minutes_late == 7
    assert result.lateness_record.excused is False
    assert len(store.find(LATENESS_RECORDS, {})) == 1


def test_late_in_within_grace_creates_no_record():
    add_shift()
    clock.set(at(9, 5))

    result = reconciler.clock_in("emp-1")

    assert result.lateness_record is None
    assert store.find(LATENESS_RECORDS, {}) == []


def test_seconds_past_grace_minute_create_no_record():
    add_shift()
    clock.set(at(9, 5) + timedelta(seconds=20))

    result = reconciler.clock_in("emp-1")

    assert result.lateness_record is None
    assert store.find(LATENESS_RECORDS, {}) == []


def test_lateness_record_agrees_with_daily_classification():
    add_shift()
    clock.set(at(9, 20) + timedelta(seconds=40))

    result = reconciler.clock_in("emp-1")
    verdict, _, _ = classify_day(store, "emp-1", DAY, at(18), settings)

    assert result.lateness_record.minutes_late == 20
    assert verdict.minutes_late == 20


def test_locks_released_after_each_transition():
    for n in range(20):
        store.insert(EMPLOYEES, Employee(id=f"crew-{n}").model_dump())
        reconciler.clock_in(f"crew-{n}")
    clock.set(at(17))
    for n in range(20):
        reconciler.clock_out(f"crew-{n}")

    assert len(reconciler._locks) == 0


def test_keyed_lock_forgets_released_keys():
    locks = KeyedLock()
    with locks.hold(("emp-1", DAY)):
        with locks.hold(("emp-2", DAY)):
            assert len(locks) == 2
        assert len(locks) == 1
    assert len(locks) == 0


@pytest.mark.parametrize(
    "hour,minute,minutes_late,needs_approval",
    [(9, 20, 20, False), (10, 30, 90, True)],
)
def test_late_clock_in_classification(hour, minute, minutes_late, needs_approval):
    add_shift()
    clock.set(at(hour, minute))

    result = reconciler.clock_in("emp-1")

    assert result.entry.attendance_status == EntryAttendance.LATE
    assert result.classification.minutes_offset == minutes_late
    assert result.entry.requires_approval is needs_approval
    assert result.lateness_record.minutes_late == minutes_late


def test_unscheduled_clock_in():
    clock.set(at(10))

    result = reconciler.clock_in("emp-1")

    assert result.shift is None
    assert result.entry.attendance_status == EntryAttendance.UNSCHEDULED
    assert store.find(LATENESS_RECORDS, {}) == []

    clock.set(at(19))
    entry = reconciler.clock_out("emp-1")
    assert entry.hours_worked == 9.0
    assert entry.variance == 0.0


def test_inactive_or_unknown_employee_cannot_clock_in():
    with pytest.raises(EmployeeInactiveError):
        reconciler.clock_in("emp-2")
    with pytest.raises(EmployeeNotFoundError):
        reconciler.clock_in("nobody")
    assert store.find(TIME_ENTRIES, {}) == []


def test_duplicate_in():
    reconciler.clock_in("emp-1")
    clock.advance(minutes=5)

    with pytest.raises(AlreadyActiveError):
        reconciler.clock_in("emp-1")
    assert len(store.find(TIME_ENTRIES, {})) == 1


def test_second_session_same_day_rejected():
    reconciler.clock_in("emp-1")
    clock.set(at(12))
    reconciler.clock_out("emp-1")
    clock.set(at(13))

    with pytest.raises(DayAlreadyClosedError):
        reconciler.clock_in("emp-1")


def test_concurrent_clock_ins_admit_one():
    barrier = threading.Barrier(5)
    outcomes = []

    def attempt():
        barrier.wait()
        try:
            reconciler.clock_in("emp-1")
            outcomes.append("ok")
        except AlreadyActiveError:
            outcomes.append("rejected")

    threads = [threading.Thread(target=attempt) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("rejected") == 4
    assert len(store.find(TIME_ENTRIES, {})) == 1
    assert len(reconciler._locks) == 0


def test_break_and_resume_keep_shift_in_step():
    shift_id = add_shift()
    reconciler.clock_in("emp-1")

    clock.set(at(12))
    entry = reconciler.start_break("emp-1")
    assert entry.status == EntryStatus.ON_BREAK
    assert entry.on_break_start == at(12)
    assert get_shift(store, shift_id).status == ShiftStatus.ON_BREAK

    clock.set(at(12, 30))
    entry = reconciler.resume_work("emp-1")
    assert entry.status == EntryStatus.CLOCKED_IN
    assert entry.on_break_start is None
    assert len(entry.breaks) == 1
    assert entry.breaks[0].duration_minutes == 30
    assert get_shift(store, shift_id).status == ShiftStatus.IN_PROGRESS

    clock.set(at(17))
    entry = reconciler.clock_out("emp-1")
    assert entry.hours_worked == 7.5
    assert entry.variance == -0.5


def test_clock_out_from_break_keeps_break_time():
    add_shift()
    reconciler.clock_in("emp-1")
    clock.set(at(12))
    reconciler.start_break("emp-1")

    clock.set(at(12, 45))
    entry = reconciler.clock_out("emp-1")

    assert entry.breaks[0].duration_minutes == 45
    assert entry.hours_worked == 3.0
    assert entry.on_break_start is None


def test_start_break_after_clock_out_fails():
    reconciler.clock_in("emp-1")
    clock.set(at(12))
    reconciler.clock_out("emp-1")

    with pytest.raises(NotClockedInError):
        reconciler.start_break("emp-1")


def test_start_break_twice_fails():
    reconciler.clock_in("emp-1")
    reconciler.start_break("emp-1")

    with pytest.raises(NotClockedInError):
        reconciler.start_break("emp-1")


def test_resume_without_break_fails():
    reconciler.clock_in("emp-1")

    with pytest.raises(NotOnBreakError):
        reconciler.resume_work("emp-1")


def test_clock_out_without_entry_fails():
    with pytest.raises(NoActiveEntryError):
        reconciler.clock_out("emp-1")


def test_overnight_shift():
    shift_id = add_shift("22:00", "06:00")
    clock.set(at(21, 55))
    result = reconciler.clock_in("emp-1")
    assert result.entry.attendance_status == EntryAttendance.ON_TIME
    assert result.entry.scheduled_hours == 8.0
    assert result.lateness_record is None

    clock.set(at(1, 0, NEXT_DAY))
    reconciler.start_break("emp-1")
    clock.set(at(1, 30, NEXT_DAY))
    reconciler.resume_work("emp-1")
    clock.set(at(6, 10, NEXT_DAY))
    entry = reconciler.clock_out("emp-1")

    assert entry.date == DAY
    assert entry.hours_worked == 7.75
    assert entry.variance == -0.25
    assert get_shift(store, shift_id).actual_end_time == "06:10"


def test_force_reset_is_idempotent():
    add_shift()
    reconciler.clock_in("emp-1")
    clock.set(at(11))
    reconciler.start_break("emp-1")
    clock.set(at(13))

    first = reconciler.force_reset("emp-1", DAY, actor="admin-1")
    assert first.reset is True
    assert first.entry.status == EntryStatus.CLOCKED_OUT
    assert first.entry.hours_worked == 2.0

    clock.set(at(15))
    second = reconciler.force_reset("emp-1", DAY, actor="admin-1")
    assert second.reset is False
    assert second.message == "Nothing to reset"
    assert second.entry.model_dump() == first.entry.model_dump()


def test_force_reset_without_entry_fails():
    with pytest.raises(NoActiveEntryError):
        reconciler.force_reset("emp-1", DAY)


def test_delete_entry_resets_linked_shift():
    shift_id = add_shift()
    entry = reconciler.clock_in("emp-1").entry
    clock.set(at(17))
    reconciler.clock_out("emp-1")

    result = reconciler.delete_entry(entry.id)

    assert result.deleted is True
    assert result.shift_reset is True
    assert get_entry(store, entry.id) is None
    shift = get_shift(store, shift_id)
    assert shift.status == ShiftStatus.SCHEDULED
    assert shift.actual_start_time is None
    assert shift.actual_end_time is None
    assert shift.time_entry_id is None


def test_shift_write_failures_never_block_attendance():
    global reconciler
    failing = ShiftWriteFailingStore()
    failing.insert(EMPLOYEES, Employee(id="emp-1").model_dump())
    failing.insert(SHIFT_ASSIGNMENTS, ShiftAssignment(employee_id="emp-1", date=DAY, start_time="09:00", end_time="17:00").model_dump())
    reconciler = AttendanceReconciler(failing, settings=settings, clock=clock)

    entry = reconciler.clock_in("emp-1").entry
    assert entry.shift_id is not None
    clock.set(at(17))
    assert reconciler.clock_out("emp-1").hours_worked == 8.0

    result = reconciler.delete_entry(entry.id)
    assert result.deleted is True
    assert result.shift_reset is False
    assert failing.find(TIME_ENTRIES, {}) == []


def test_notification_failure_does_not_fail_clock_in():
    def broken_notifier(notification):
        raise RuntimeError("mail server down")

    noisy = AttendanceReconciler(store, settings=settings, clock=clock, notifier=broken_notifier)
    result = noisy.clock_in("emp-1")
    assert result.entry.status == EntryStatus.CLOCKED_IN


def test_notifications_are_recorded():
    add_shift()
    clock.set(at(9, 45))
    reconciler.clock_in("emp-1")

    notifications = store.find(NOTIFICATIONS, {})
    assert {n["title"] for n in notifications} == {"Clocked In", "Significant Lateness Detected"}


def test_manual_entry_computes_derived_fields():
    shift_id = add_shift()

    entry = reconciler.manual_entry("emp-1", DAY, "09:00", "17:30", breaks=[{"start": "12:00", "end": "12:30"}], actor="admin-1")
    assert entry.is_manual_entry is True
    assert entry.status == EntryStatus.CLOCKED_OUT
    assert entry.breaks[0].duration_minutes == 30
    assert entry.hours_worked == 8.0
    assert entry.scheduled_hours == 8.0
    assert entry.variance == 0.0
    assert get_shift(store, shift_id).status == ShiftStatus.COMPLETED

    revised = reconciler.manual_entry("emp-1", DAY, "09:00", "18:00", breaks=[{"duration": 30}])
    assert revised.id == entry.id
    assert revised.hours_worked == 8.5
    assert len(store.find(TIME_ENTRIES, {})) == 1


def test_manual_entry_rejects_reversed_interval():
    with pytest.raises(InvalidIntervalError):
        reconciler.manual_entry("emp-1", DAY, at(17), at(9))
    assert store.find(TIME_ENTRIES, {}) == []


def test_excuse_lateness():
    add_shift()
    clock.set(at(9, 20))
    record = reconciler.clock_in("emp-1").lateness_record

    excused = reconciler.excuse_lateness(record.id, actor="mgr-1", reason="Train delay")
    assert excused.excused is True
    assert excused.excused_by == "mgr-1"
    assert excused.excuse_reason == "Train delay"
    assert excused.minutes_late == 20

    with pytest.raises(LatenessAlreadyExcusedError):
        reconciler.excuse_lateness(record.id, actor="mgr-1", reason="again")


def test_mark_missed_shifts_respects_cutoff_and_leave():
    store.insert(EMPLOYEES, Employee(id="emp-3").model_dump())
    missed_id = add_shift()
    leave_id = add_shift(employee_id="emp-3")
    store.insert(LEAVE_RECORDS, LeaveRecord(employee_id="emp-3", start_date=DAY, end_date=DAY).model_dump())

    clock.set(at(11))
    assert reconciler.mark_missed_shifts(DAY) == 0

    clock.set(at(10, 0, NEXT_DAY))
    assert reconciler.mark_missed_shifts(DAY) == 1
    assert get_shift(store, missed_id).status == ShiftStatus.MISSED
    assert get_shift(store, leave_id).status == ShiftStatus.SCHEDULED


def test_location_preference():
    office = add_shift("09:00", "13:00", location="Office")
    home = add_shift("13:00", "17:00", location="Home")

    result = reconciler.clock_in("emp-1", location="Home")
    assert result.shift.id == home
    assert result.location_mismatch is False

    setup_function()
    office = add_shift("09:00", "13:00", location="Office")
    result = reconciler.clock_in("emp-1", location="Field")
    assert result.shift.id == office
    assert result.location_mismatch is True


def test_org_timezone_during_summer_time():
    summer = date(2025, 7, 21)
    add_shift(day=summer)
    clock.set(at(8, 7, summer))

    result = reconciler.clock_in("emp-1")

    assert result.entry.date == summer
    assert result.lateness_record.minutes_late == 7
    assert get_shift(store, result.shift.id).actual_start_time == "09:07"
