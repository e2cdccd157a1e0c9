"""
Weekly Summary Generator
========================
Aggregates one calendar week (Sunday 00:00 to Saturday 23:59:59.999999,
organization time zone) of check-in records:

- totalEmployees: distinct names
- totalCheckins
- averageCheckinTime: mean local minute-of-day, rounded half up, "HH:MM"
- latestCheckin: the newest check-in by full timestamp
- departmentStats: the same numbers per department

Also decides when the scheduled run is allowed (weekday + hour window).
"""
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app.models import AttendanceRecord, is_checkin_action
from app.utils import format_local, format_minutes, get_zone, minutes_of_day, to_local

logger = logging.getLogger(__name__)

NO_DATA_NAME = "데이터없음"
NO_DATA_VALUE = "-"
UNKNOWN_DEPARTMENT = "미지정"
EMPTY_AVERAGE = "00:00"


@dataclass
class LatestCheckin:
    name: str = NO_DATA_NAME
    time: str = NO_DATA_VALUE
    department: str = NO_DATA_VALUE

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "time": self.time, "department": self.department}


@dataclass
class DepartmentStats:
    totalCheckins: int
    averageTime: str
    latestCheckin: LatestCheckin

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalCheckins": self.totalCheckins,
            "averageTime": self.averageTime,
            "latestCheckin": self.latestCheckin.to_dict(),
        }


@dataclass
class WeeklySummary:
    weekStart: str
    weekEnd: str
    totalEmployees: int = 0
    totalCheckins: int = 0
    averageCheckinTime: str = EMPTY_AVERAGE
    latestCheckin: LatestCheckin = field(default_factory=LatestCheckin)
    departmentStats: Dict[str, DepartmentStats] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "weekStart": self.weekStart,
            "weekEnd": self.weekEnd,
            "totalEmployees": self.totalEmployees,
            "totalCheckins": self.totalCheckins,
            "averageCheckinTime": self.averageCheckinTime,
            "latestCheckin": self.latestCheckin.to_dict(),
            "departmentStats": {k: v.to_dict() for k, v in self.departmentStats.items()},
        }


# ============================================
# Week boundaries
# ============================================

def week_range(reference: date, tz_name: str) -> Tuple[datetime, datetime]:
    """
    Return (start, end) as aware local datetimes for the Sunday-based week
    containing `reference`. `end` is exclusive (the next Sunday 00:00).
    """
    # Python weekday(): Monday=0 ... Sunday=6
    days_since_sunday = (reference.weekday() + 1) % 7
    sunday = reference - timedelta(days=days_since_sunday)
    zone = get_zone(tz_name)
    start = datetime(sunday.year, sunday.month, sunday.day, tzinfo=zone)
    next_sunday = sunday + timedelta(days=7)
    end = datetime(next_sunday.year, next_sunday.month, next_sunday.day, tzinfo=zone)
    return start, end


def day_range(day: date, tz_name: str) -> Tuple[datetime, datetime]:
    zone = get_zone(tz_name)
    start = datetime(day.year, day.month, day.day, tzinfo=zone)
    following = day + timedelta(days=1)
    return start, datetime(following.year, following.month, following.day, tzinfo=zone)


def month_range(day: date, tz_name: str) -> Tuple[datetime, datetime]:
    zone = get_zone(tz_name)
    start = datetime(day.year, day.month, 1, tzinfo=zone)
    if day.month == 12:
        return start, datetime(day.year + 1, 1, 1, tzinfo=zone)
    return start, datetime(day.year, day.month + 1, 1, tzinfo=zone)


# ============================================
# Aggregation
# ============================================

def average_time(records: List[AttendanceRecord], tz_name: str) -> str:
    if not records:
        return EMPTY_AVERAGE
    total = sum(minutes_of_day(to_local(r.timestamp, tz_name)) for r in records)
    return format_minutes(math.floor(total / len(records) + 0.5))


def latest_checkin(records: List[AttendanceRecord], tz_name: str) -> LatestCheckin:
    if not records:
        return LatestCheckin()
    latest = max(records, key=lambda r: r.timestamp)
    return LatestCheckin(
        name=latest.name or NO_DATA_NAME,
        time=format_local(latest.timestamp, tz_name, "%Y-%m-%d %H:%M"),
        department=latest.department or UNKNOWN_DEPARTMENT,
    )


def generate_weekly_summary(
    records: Iterable[AttendanceRecord],
    reference: date,
    tz_name: str = "Asia/Seoul",
) -> WeeklySummary:
    """Summarize the check-ins of the week containing `reference`. Never raises on empty input."""
    start, end = week_range(reference, tz_name)
    checkins = [r for r in records if is_checkin_action(r.action) and start <= r.timestamp < end]

    summary = WeeklySummary(
        weekStart=start.date().isoformat(),
        weekEnd=(end.date() - timedelta(days=1)).isoformat(),
    )
    if not checkins:
        logger.info(f"No check-ins between {summary.weekStart} and {summary.weekEnd}")
        return summary

    summary.totalEmployees = len({r.name for r in checkins if r.name})
    summary.totalCheckins = len(checkins)
    summary.averageCheckinTime = average_time(checkins, tz_name)
    summary.latestCheckin = latest_checkin(checkins, tz_name)

    by_department: Dict[str, List[AttendanceRecord]] = defaultdict(list)
    for record in checkins:
        by_department[record.department or UNKNOWN_DEPARTMENT].append(record)

    for department, items in by_department.items():
        summary.departmentStats[department] = DepartmentStats(
            totalCheckins=len(items),
            averageTime=average_time(items, tz_name),
            latestCheckin=latest_checkin(items, tz_name),
        )

    logger.info(
        f"Weekly summary {summary.weekStart}~{summary.weekEnd}: "
        f"{summary.totalCheckins} check-ins, {summary.totalEmployees} employees"
    )
    return summary


# ============================================
# Scheduler window
# ============================================

WEEKDAY_NAMES_KO = ["월요일", "화요일", "수요일", "목요일", "금요일", "토요일", "일요일"]


def next_execution(now: datetime, weekday: int, hour: int) -> datetime:
    """The next weekday/hour:00 slot at or after `now` (same zone as `now`)."""
    days_ahead = (weekday - now.weekday()) % 7
    candidate = (now + timedelta(days=days_ahead)).replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate < now:
        candidate += timedelta(days=7)
    return candidate


def scheduler_window(now: datetime, weekday: int, hour: int) -> Dict[str, Any]:
    """Status block for the scheduler endpoint; `now` should be local time."""
    is_scheduled_day = now.weekday() == weekday
    is_after_hour = now.hour >= hour
    can_run = is_scheduled_day and is_after_hour

    if can_run:
        message = "지금 주간 결산을 실행할 수 있습니다."
    else:
        message = f"주간 결산은 매주 {WEEKDAY_NAMES_KO[weekday % 7]} {hour}시 이후에 실행됩니다."

    return {
        "currentTime": now.isoformat(timespec="seconds"),
        "isScheduledDay": is_scheduled_day,
        "isAfterHour": is_after_hour,
        "canRunNow": can_run,
        "nextExecution": next_execution(now, weekday, hour).isoformat(timespec="seconds"),
        "message": message,
    }


def resolve_reference_date(requested: Optional[date], now: datetime, tz_name: str) -> date:
    return requested or to_local(now, tz_name).date()
