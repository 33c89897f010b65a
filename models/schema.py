from datetime import datetime, date
from enum import Enum
from typing import Optional, List, Dict

from pydantic import BaseModel, Field


class ShiftStatus(str, Enum):
    SCHEDULED = "Scheduled"
    IN_PROGRESS = "In Progress"
    ON_BREAK = "On Break"
    COMPLETED = "Completed"
    MISSED = "Missed"
    CANCELLED = "Cancelled"
    SWAPPED = "Swapped"


MATCHABLE_SHIFT_STATUSES = [ShiftStatus.SCHEDULED, ShiftStatus.IN_PROGRESS]


class EntryStatus(str, Enum):
    CLOCKED_IN = "clocked_in"
    ON_BREAK = "on_break"
    CLOCKED_OUT = "clocked_out"


OPEN_ENTRY_STATUSES = [EntryStatus.CLOCKED_IN, EntryStatus.ON_BREAK]


class EntryAttendance(str, Enum):
    EARLY = "Early"
    ON_TIME = "On Time"
    LATE = "Late"
    UNSCHEDULED = "Unscheduled"
    UNSCHEDULABLE = "Unschedulable"


class AttendanceStatus(str, Enum):
    UNSCHEDULED = "Unscheduled"
    PENDING = "Pending"
    ON_TIME = "OnTime"
    LATE = "Late"
    ABSENT = "Absent"
    ON_LEAVE = "OnLeave"
    UNSCHEDULABLE = "Unschedulable"


class Employee(BaseModel):
    id: str
    name: str = ""
    is_active: bool = True
    status: str = "Active"
    hourly_rate: float = 0.0


class SwapRequest(BaseModel):
    requested_by: Optional[str] = None
    requested_with: Optional[str] = None
    status: str = "None"
    reason: str = ""
    requested_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None


class ShiftAssignment(BaseModel):
    id: Optional[str] = None
    employee_id: str
    date: date
    start_time: str
    end_time: str
    location: str = "Office"
    work_type: str = "Regular"
    status: ShiftStatus = ShiftStatus.SCHEDULED
    break_duration: int = Field(default=0, ge=0)
    actual_start_time: Optional[str] = None
    actual_end_time: Optional[str] = None
    time_entry_id: Optional[str] = None
    swap_request: Optional[SwapRequest] = None
    notes: str = ""


class GpsCapture(BaseModel):
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    captured_at: Optional[datetime] = None


class BreakRecord(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    duration_minutes: float = Field(default=0.0, ge=0)
    category: str = "other"


class TimeEntry(BaseModel):
    id: Optional[str] = None
    employee_id: str
    date: date
    clock_in: Optional[datetime] = None
    clock_out: Optional[datetime] = None
    breaks: List[BreakRecord] = Field(default_factory=list)
    status: EntryStatus = EntryStatus.CLOCKED_IN
    on_break_start: Optional[datetime] = None
    hours_worked: float = 0.0
    scheduled_hours: float = 0.0
    variance: float = 0.0
    attendance_status: EntryAttendance = EntryAttendance.UNSCHEDULED
    requires_approval: bool = False
    location: Optional[str] = None
    work_type: str = "Regular"
    gps_in: Optional[GpsCapture] = None
    gps_out: Optional[GpsCapture] = None
    shift_id: Optional[str] = None
    is_manual_entry: bool = False
    created_by: Optional[str] = None


class LatenessRecord(BaseModel):
    id: Optional[str] = None
    employee_id: str
    date: date
    scheduled_start: datetime
    actual_start: datetime
    minutes_late: int = Field(ge=0)
    shift_id: Optional[str] = None
    excused: bool = False
    excused_by: Optional[str] = None
    excused_at: Optional[datetime] = None
    excuse_reason: Optional[str] = None
    created_by: Optional[str] = None
    created_by_role: str = "system"
    notes: str = ""


class LeaveRecord(BaseModel):
    id: Optional[str] = None
    employee_id: str
    start_date: date
    end_date: date
    status: str = "approved"
    leave_type: str = "annual"


class Notification(BaseModel):
    id: Optional[str] = None
    user_id: Optional[str] = None
    type: str = "system"
    title: str
    message: str
    priority: str = "medium"
    created_at: Optional[datetime] = None


class ClockInClassification(BaseModel):
    status: EntryAttendance
    minutes_offset: int = 0
    requires_approval: bool = False
    message: str = ""


class AttendanceVerdict(BaseModel):
    status: AttendanceStatus
    minutes_late: int = 0
    reason: str = ""


class ShiftMatch(BaseModel):
    shift: ShiftAssignment
    location_mismatch: bool = False


class ClockInResult(BaseModel):
    entry: TimeEntry
    shift: Optional[ShiftAssignment] = None
    classification: Optional[ClockInClassification] = None
    lateness_record: Optional[LatenessRecord] = None
    location_mismatch: bool = False


class ForceResetResult(BaseModel):
    reset: bool
    message: str
    entry: TimeEntry


class DeleteEntryResult(BaseModel):
    deleted: bool
    entry_id: str
    shift_reset: bool = False


class LatenessStats(BaseModel):
    total_incidents: int = 0
    excused_incidents: int = 0
    unexcused_incidents: int = 0
    total_minutes_late: int = 0
    average_minutes_late: float = 0.0


class UnrecordedLateness(BaseModel):
    employee_id: str
    date: date
    entry_id: Optional[str] = None
    shift_id: Optional[str] = None
    minutes_late: int


class EmployeeLatenessSummary(BaseModel):
    employee_id: str
    late_days: int = 0
    total_minutes_late: int = 0
    average_minutes_late: float = 0.0
    records: LatenessStats = Field(default_factory=LatenessStats)


class LatenessReport(BaseModel):
    start: date
    end: date
    employees: List[EmployeeLatenessSummary] = Field(default_factory=list)
    unrecorded: List[UnrecordedLateness] = Field(default_factory=list)
    unschedulable: List[str] = Field(default_factory=list)


class OvertimeInstance(BaseModel):
    employee_id: str
    date: date
    entry_id: Optional[str] = None
    hours_worked: float
    scheduled_hours: Optional[float] = None
    overtime_hours: float
    cost: float


class EmployeeOvertimeSummary(BaseModel):
    employee_id: str
    hourly_rate: float = 0.0
    instances: int = 0
    total_overtime_hours: float = 0.0
    total_cost: float = 0.0


class OvertimeReport(BaseModel):
    start: date
    end: date
    employees: List[EmployeeOvertimeSummary] = Field(default_factory=list)
    instances: List[OvertimeInstance] = Field(default_factory=list)


class AbsenceInstance(BaseModel):
    employee_id: str
    date: date
    shift_id: Optional[str] = None
    reason: str = ""
    minutes_late: int = 0


class EmployeeAbsenceSummary(BaseModel):
    employee_id: str
    absent_days: int = 0
    suppressed_by_leave: int = 0


class AbsenceReport(BaseModel):
    start: date
    end: date
    employees: List[EmployeeAbsenceSummary] = Field(default_factory=list)
    absences: List[AbsenceInstance] = Field(default_factory=list)


class AttendanceSummary(BaseModel):
    employee_id: str
    total_days: int = 0
    counts: Dict[str, int] = Field(default_factory=dict)
    total_hours: float = 0.0
    average_hours: float = 0.0
    # closed days worked short of the linked shift
    short_days: int = 0
    under_hours: float = 0.0
    # entries still clocked in or on break, measured up to ``now``
    open_entries: int = 0
    provisional_hours: float = 0.0


class DailyAttendanceRow(BaseModel):
    employee_id: str
    shift_id: Optional[str] = None
    start_time: str
    end_time: str
    location: str
    status: AttendanceStatus
    minutes_late: int = 0
    reason: str = ""
    clock_in: Optional[datetime] = None


class DailyAttendance(BaseModel):
    date: date
    total_scheduled: int = 0
    on_leave: int = 0
    buckets: Dict[str, List[DailyAttendanceRow]] = Field(default_factory=dict)


class ShiftDrift(BaseModel):
    entry_id: Optional[str] = None
    shift_id: Optional[str] = None
    entry_status: Optional[EntryStatus] = None
    shift_status: Optional[ShiftStatus] = None
    problem: str
