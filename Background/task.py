import logging
from datetime import date
from typing import Optional

from fastapi import BackgroundTasks, FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from attendance import classify_day
from main import AttendanceReconciler
from models.errors import AttendanceError, NOT_FOUND_ERRORS
from models.schema import GpsCapture
from reports import daily_attendance
from utils.config import load_settings
from utils.helper import InMemoryStore
from utils.shift_matcher import find_shift

store = InMemoryStore()
reconciler = AttendanceReconciler(store, settings=load_settings())
app = FastAPI()


class ClockInRequest(BaseModel):
    employee_id: str
    location: Optional[str] = None
    work_type: Optional[str] = None
    gps: Optional[GpsCapture] = None


class ClockRequest(BaseModel):
    employee_id: str
    work_date: Optional[date] = None
    gps: Optional[GpsCapture] = None


@app.exception_handler(AttendanceError)
async def attendance_error_handler(request, exc: AttendanceError):
    status_code = 404 if isinstance(exc, NOT_FOUND_ERRORS) else 400
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": type(exc).__name__, "message": exc.message},
    )


@app.post("/clock/in")
def clock_in(body: ClockInRequest):
    result = reconciler.clock_in(body.employee_id, location=body.location, work_type=body.work_type, gps=body.gps)
    return {"success": True, "data": result.model_dump(mode="json")}


@app.post("/clock/break")
def start_break(body: ClockRequest):
    entry = reconciler.start_break(body.employee_id, body.work_date)
    return {"success": True, "data": entry.model_dump(mode="json")}


@app.post("/clock/resume")
def resume_work(body: ClockRequest):
    entry = reconciler.resume_work(body.employee_id, body.work_date)
    return {"success": True, "data": entry.model_dump(mode="json")}


@app.post("/clock/out")
def clock_out(body: ClockRequest):
    entry = reconciler.clock_out(body.employee_id, body.work_date, gps=body.gps)
    return {"success": True, "data": entry.model_dump(mode="json")}


@app.post("/clock/force-reset/{employee_id}")
def force_reset(employee_id: str, day: Optional[date] = None):
    result = reconciler.force_reset(employee_id, day)
    return {"success": True, "message": result.message, "data": result.model_dump(mode="json")}


@app.delete("/clock/entry/{entry_id}")
def delete_entry(entry_id: str):
    result = reconciler.delete_entry(entry_id)
    return {"success": True, "data": result.model_dump(mode="json")}


@app.get("/shifts/{employee_id}/{day}")
def matching_shift(employee_id: str, day: date, location: Optional[str] = None):
    match = find_shift(store, employee_id, day, location)
    return {"success": True, "data": match.model_dump(mode="json") if match else None}


@app.get("/attendance/{employee_id}/{day}")
def attendance_for_day(employee_id: str, day: date):
    verdict, shift, entry = classify_day(store, employee_id, day, reconciler.clock.now(), reconciler.settings)
    return {"success": True, "data": verdict.model_dump(mode="json")}


@app.get("/attendance-status/{day}")
def attendance_status(day: date):
    board = daily_attendance(store, day, now=reconciler.clock.now(), settings=reconciler.settings)
    return {"success": True, "data": board.model_dump(mode="json")}


def run_end_of_day_check(day: Optional[date] = None) -> int:
    logging.info("Running end-of-day missed-shift check")
    missed = reconciler.mark_missed_shifts(day)
    logging.info("End-of-day missed-shift check completed.")
    return missed


@app.post("/sweep/missed-shifts")
def sweep_missed_shifts(background_tasks: BackgroundTasks, day: Optional[date] = None):
    background_tasks.add_task(run_end_of_day_check, day)
    return {"status": "Missed-shift sweep scheduled, processing in background."}
