import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Hashable, Optional

import pytz
from pydantic_settings import BaseSettings, SettingsConfigDict

ORG_TIMEZONE = "Europe/London"
ONTIME_BUFFER_MINUTES = 15
LATENESS_RECORD_GRACE_MINUTES = 5
ABSENCE_CUTOFF_MINUTES = 180
REQUIRES_APPROVAL_AFTER_MINUTES = 60
STANDARD_DAY_HOURS = 8.0
OVERTIME_MULTIPLIER = 1.5
SIGNIFICANT_LATENESS_MINUTES = 30


class AttendanceSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ATTENDANCE_", env_file=".env", extra="ignore")

    org_timezone: str = ORG_TIMEZONE
    # clock-in classification window around the scheduled start
    ontime_buffer_minutes: int = ONTIME_BUFFER_MINUTES
    # minutes late before a LatenessRecord is written at clock-in
    lateness_record_grace_minutes: int = LATENESS_RECORD_GRACE_MINUTES
    # Late/Absent boundary for daily classification
    absence_cutoff_minutes: int = ABSENCE_CUTOFF_MINUTES
    requires_approval_after_minutes: int = REQUIRES_APPROVAL_AFTER_MINUTES
    standard_day_hours: float = STANDARD_DAY_HOURS
    overtime_multiplier: float = OVERTIME_MULTIPLIER
    significant_lateness_minutes: int = SIGNIFICANT_LATENESS_MINUTES

    @property
    def tz(self):
        return pytz.timezone(self.org_timezone)


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(pytz.UTC)


class FixedClock:
    """Clock pinned to a settable instant, for replaying time-boundary scenarios."""

    def __init__(self, instant: datetime):
        self.set(instant)

    def set(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            instant = pytz.UTC.localize(instant)
        self._instant = instant.astimezone(pytz.UTC)

    def advance(self, **kwargs) -> datetime:
        self._instant = self._instant + timedelta(**kwargs)
        return self._instant

    def now(self) -> datetime:
        return self._instant


class KeyedLock:
    """
    One mutex per key; keys are (employee_id, date) pairs.

    A key's lock lives only while someone holds or waits on it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._holders: Dict[Hashable, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: Hashable):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._holders[key] = self._holders.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._holders[key] -= 1
                if not self._holders[key]:
                    del self._holders[key]
                    del self._locks[key]


def load_settings(**overrides) -> AttendanceSettings:
    return AttendanceSettings(**overrides)


def resolve_settings(settings: Optional[AttendanceSettings]) -> AttendanceSettings:
    return settings if settings is not None else load_settings()
