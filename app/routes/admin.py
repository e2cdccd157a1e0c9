"""
Admin Routes - daily attendance dashboard data
GET /api/admin/attendance?date=YYYY-MM-DD
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from app.auth import require_admin_token
from app.config import Settings, get_settings
from app.dependencies import get_backend, get_clock
from app.exceptions import AttendanceError
from app.services.attendance_service import AttendanceBackend, compute_daily_stats, working_hours_by_user
from app.services.summary_service import day_range, resolve_reference_date
from app.utils import parse_date_param

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])
logger = logging.getLogger(__name__)

SHEET_ID_ERROR = "구글 시트 ID를 추출할 수 없습니다."


def error_response(status_code: int, message: str, exc: Optional[Exception] = None) -> JSONResponse:
    content = {"success": False, "error": message}
    if exc is not None:
        content["details"] = str(exc)
    return JSONResponse(status_code=status_code, content=content)


def missing_sheet_id(settings: Settings, backend: AttendanceBackend) -> bool:
    return backend.name == "sheets" and not settings.spreadsheet_id


@router.get("/attendance")
async def get_daily_attendance(
    date: Optional[str] = Query(None, description="YYYY-MM-DD, defaults to today"),
    settings: Settings = Depends(get_settings),
    backend: AttendanceBackend = Depends(get_backend),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    """Records of one local day (newest first) plus summary stats."""
    if missing_sheet_id(settings, backend):
        return error_response(400, SHEET_ID_ERROR)

    day = resolve_reference_date(parse_date_param(date), clock(), settings.TIMEZONE)
    start, end = day_range(day, settings.TIMEZONE)

    try:
        records = await backend.list_records(start, end)
        total_users = await backend.count_users()
    except AttendanceError as e:
        logger.error(f"Admin attendance query failed: {e}")
        return error_response(500, "출근 데이터 조회 중 오류가 발생했습니다.", e)

    hours = working_hours_by_user(records)
    rows = []
    for record in sorted(records, key=lambda r: r.timestamp, reverse=True):
        row = record.to_dict()
        worked = hours.get(record.user_id or record.name)
        row["workingHours"] = round(worked, 1) if worked is not None else None
        rows.append(row)

    return {
        "success": True,
        "date": day.isoformat(),
        "records": rows,
        "stats": compute_daily_stats(records, total_users),
    }
