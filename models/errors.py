class AttendanceError(Exception):
    """Base for every precondition or validation failure raised by the engine."""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class EmployeeNotFoundError(AttendanceError):
    pass


class EmployeeInactiveError(AttendanceError):
    pass


class AlreadyActiveError(AttendanceError):
    pass


class DayAlreadyClosedError(AttendanceError):
    pass


class NotClockedInError(AttendanceError):
    pass


class NotOnBreakError(AttendanceError):
    pass


class NoActiveEntryError(AttendanceError):
    pass


class EntryNotFoundError(AttendanceError):
    pass


class LatenessRecordNotFoundError(AttendanceError):
    pass


class LatenessAlreadyExcusedError(AttendanceError):
    pass


class MalformedTimeError(AttendanceError, ValueError):
    pass


class InvalidIntervalError(AttendanceError, ValueError):
    pass


NOT_FOUND_ERRORS = (EmployeeNotFoundError, EntryNotFoundError, LatenessRecordNotFoundError, NoActiveEntryError)
