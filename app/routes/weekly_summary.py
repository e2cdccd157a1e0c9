"""
Weekly Summary Routes

- GET  /api/weekly-summary?date=YYYY-MM-DD           compute the week's summary
- POST /api/weekly-summary?date=YYYY-MM-DD&save=true compute, optionally save as a sheet
- GET  /api/scheduler/weekly-summary                 is the scheduled window open?
- POST /api/scheduler/weekly-summary?force=true      run now (gated unless forced)
                                                      date=YYYY-MM-DD picks the target week

An unparseable date falls back to today.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Query

from app.auth import require_admin_token
from app.config import Settings, get_settings
from app.dependencies import get_backend, get_clock
from app.exceptions import AttendanceError
from app.routes.admin import SHEET_ID_ERROR, error_response, missing_sheet_id
from app.services.attendance_service import AttendanceBackend
from app.services.summary_service import (
    WeeklySummary,
    generate_weekly_summary,
    resolve_reference_date,
    scheduler_window,
    week_range,
)
from app.utils import parse_date_param, to_local

router = APIRouter(prefix="/api", tags=["weekly-summary"], dependencies=[Depends(require_admin_token)])
logger = logging.getLogger(__name__)


async def build_summary(
    backend: AttendanceBackend,
    settings: Settings,
    now: datetime,
    date_param: Optional[str] = None,
) -> WeeklySummary:
    reference = resolve_reference_date(parse_date_param(date_param), now, settings.TIMEZONE)
    start, end = week_range(reference, settings.TIMEZONE)
    records = await backend.list_records(start, end)
    return generate_weekly_summary(records, reference, settings.TIMEZONE)


# ============================================
# Weekly summary
# ============================================

@router.get("/weekly-summary")
async def get_weekly_summary(
    date: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
    backend: AttendanceBackend = Depends(get_backend),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    if missing_sheet_id(settings, backend):
        return error_response(400, SHEET_ID_ERROR)
    try:
        summary = await build_summary(backend, settings, clock(), date)
    except AttendanceError as e:
        logger.error(f"Weekly summary query failed: {e}")
        return error_response(500, "주간 결산 조회 중 오류가 발생했습니다.", e)
    return {"success": True, "data": summary.to_dict()}


@router.post("/weekly-summary")
async def create_weekly_summary(
    date: Optional[str] = Query(None),
    save: bool = Query(False),
    settings: Settings = Depends(get_settings),
    backend: AttendanceBackend = Depends(get_backend),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    if missing_sheet_id(settings, backend):
        return error_response(400, SHEET_ID_ERROR)
    try:
        summary = (await build_summary(backend, settings, clock(), date)).to_dict()
        sheet_name = await backend.save_summary(summary) if save else None
    except AttendanceError as e:
        logger.error(f"Weekly summary generation failed: {e}")
        return error_response(500, "주간 결산 생성 중 오류가 발생했습니다.", e)

    return {"success": True, "data": summary, "savedToSheet": save, "sheetName": sheet_name}


# ============================================
# Scheduler
# ============================================

@router.get("/scheduler/weekly-summary")
async def get_scheduler_status(
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    now = to_local(clock(), settings.TIMEZONE)
    status = scheduler_window(now, settings.SUMMARY_WEEKDAY, settings.SUMMARY_HOUR)
    return {"success": True, **status}


@router.post("/scheduler/weekly-summary")
async def run_scheduled_summary(
    force: bool = Query(False),
    date: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
    backend: AttendanceBackend = Depends(get_backend),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    now = to_local(clock(), settings.TIMEZONE)
    status = scheduler_window(now, settings.SUMMARY_WEEKDAY, settings.SUMMARY_HOUR)

    if not status["canRunNow"] and not force:
        logger.info(f"Scheduled summary skipped: {status['message']}")
        return {
            "success": False,
            "message": status["message"],
            "isScheduledDay": status["isScheduledDay"],
            "isAfterHour": status["isAfterHour"],
            "canRunNow": status["canRunNow"],
            "nextExecution": status["nextExecution"],
        }

    if missing_sheet_id(settings, backend):
        return error_response(400, SHEET_ID_ERROR)

    try:
        summary = (await build_summary(backend, settings, now, date)).to_dict()
        sheet_name = await backend.save_summary(summary)
    except AttendanceError as e:
        logger.error(f"Scheduled weekly summary failed: {e}")
        return error_response(500, "주간 결산 실행 중 오류가 발생했습니다.", e)

    logger.info(f"✅ Scheduled weekly summary saved to {sheet_name} (forced={force})")
    return {
        "success": True,
        "data": summary,
        "savedToSheet": True,
        "sheetName": sheet_name,
        "executedAt": now.isoformat(timespec="seconds"),
        "forced": force,
    }
