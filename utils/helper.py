import copy
import uuid
from datetime import date
from typing import Optional, List, Dict, Any, Protocol

from models.schema import (
    Employee,
    TimeEntry,
    ShiftAssignment,
    LatenessRecord,
    Notification,
    OPEN_ENTRY_STATUSES,
)

EMPLOYEES = "employees"
SHIFT_ASSIGNMENTS = "shift_assignments"
TIME_ENTRIES = "time_entries"
LATENESS_RECORDS = "lateness_records"
LEAVE_RECORDS = "leave_records"
NOTIFICATIONS = "notifications"


class DocumentStore(Protocol):
    def find_one(self, collection: str, filter: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    def find(self, collection: str, filter: Dict[str, Any]) -> List[Dict[str, Any]]: ...

    def insert(self, collection: str, record: Dict[str, Any]) -> str: ...

    def update_by_id(self, collection: str, id: str, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    def delete_by_id(self, collection: str, id: str) -> bool: ...


def _matches_condition(value: Any, condition: Any) -> bool:
    if not isinstance(condition, dict):
        return value == condition
    for op, operand in condition.items():
        if op == "$in":
            if value not in operand:
                return False
        elif op == "$nin":
            if value in operand:
                return False
        elif op == "$ne":
            if value == operand:
                return False
        elif op in ("$gte", "$gt", "$lte", "$lt"):
            if value is None:
                return False
            if op == "$gte" and not value >= operand:
                return False
            if op == "$gt" and not value > operand:
                return False
            if op == "$lte" and not value <= operand:
                return False
            if op == "$lt" and not value < operand:
                return False
        else:
            raise ValueError(f"Unsupported filter operator: {op}")
    return True


def matches(record: Dict[str, Any], filter: Dict[str, Any]) -> bool:
    return all(_matches_condition(record.get(field), condition) for field, condition in filter.items())


class InMemoryStore:
    """Dict-backed document store with Mongo-style filters; insertion order is preserved."""

    def __init__(self):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self.collections.setdefault(name, {})

    def find_one(self, collection: str, filter: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for record in self._collection(collection).values():
            if matches(record, filter):
                return copy.deepcopy(record)
        return None

    def find(self, collection: str, filter: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._collection(collection).values() if matches(r, filter)]

    def insert(self, collection: str, record: Dict[str, Any]) -> str:
        record = copy.deepcopy(record)
        if not record.get("id"):
            record["id"] = uuid.uuid4().hex
        self._collection(collection)[record["id"]] = record
        return record["id"]

    def update_by_id(self, collection: str, id: str, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        record = self._collection(collection).get(id)
        if record is None:
            return None
        record.update(copy.deepcopy(patch))
        return copy.deepcopy(record)

    def delete_by_id(self, collection: str, id: str) -> bool:
        return self._collection(collection).pop(id, None) is not None

    def clear(self) -> None:
        self.collections.clear()


def get_employee(store: DocumentStore, employee_id: str) -> Optional[Employee]:
    record = store.find_one(EMPLOYEES, {"id": employee_id})
    return Employee.model_validate(record) if record else None


def get_shift(store: DocumentStore, shift_id: str) -> Optional[ShiftAssignment]:
    record = store.find_one(SHIFT_ASSIGNMENTS, {"id": shift_id})
    return ShiftAssignment.model_validate(record) if record else None


def get_entry(store: DocumentStore, entry_id: str) -> Optional[TimeEntry]:
    record = store.find_one(TIME_ENTRIES, {"id": entry_id})
    return TimeEntry.model_validate(record) if record else None


def get_entry_for_day(store: DocumentStore, employee_id: str, work_date: date) -> Optional[TimeEntry]:
    record = store.find_one(TIME_ENTRIES, {"employee_id": employee_id, "date": work_date})
    return TimeEntry.model_validate(record) if record else None


def get_open_entry(store: DocumentStore, employee_id: str, work_date: Optional[date] = None) -> Optional[TimeEntry]:
    query: Dict[str, Any] = {"employee_id": employee_id, "status": {"$in": OPEN_ENTRY_STATUSES}}
    if work_date is not None:
        query["date"] = work_date
    records = store.find(TIME_ENTRIES, query)
    if not records:
        return None
    return TimeEntry.model_validate(max(records, key=lambda r: r["date"]))


def save_entry(store: DocumentStore, entry: TimeEntry) -> TimeEntry:
    data = entry.model_dump()
    if entry.id:
        store.update_by_id(TIME_ENTRIES, entry.id, data)
    else:
        entry.id = store.insert(TIME_ENTRIES, data)
    return entry


def insert_lateness_record(store: DocumentStore, record: LatenessRecord) -> LatenessRecord:
    record.id = store.insert(LATENESS_RECORDS, record.model_dump())
    return record


def get_lateness_records(store: DocumentStore, employee_id: str, start: date, end: date) -> List[LatenessRecord]:
    records = store.find(LATENESS_RECORDS, {"employee_id": employee_id, "date": {"$gte": start, "$lte": end}})
    return [LatenessRecord.model_validate(r) for r in records]


def dispatch_notification(store: DocumentStore, notification: Notification) -> str:
    return store.insert(NOTIFICATIONS, notification.model_dump())
