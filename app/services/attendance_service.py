"""
Attendance Recording Service
============================
One recorder, two interchangeable persistence backends.

- LatenessPolicy: late when a check-in's local minute-of-day is after the
  configured workday start. Exempt labels (leave, off-site) are never late.
- AttendanceBackend: save / list_records / count_users / save_summary
    - SheetsAttendanceBackend   (Google Sheets rows, A-V layout)
    - DatabaseAttendanceBackend (Supabase or SQLite users + attendance tables)
- AttendanceRecorder: builds the AttendanceEvent, applies the policy and
  writes it. Any backend failure surfaces as PersistenceError.
- compute_daily_stats: the admin dashboard's per-day numbers.
- load_user_status: one user's check-in today, working hours and month counts.
"""
import logging
import math
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, time
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from starlette.concurrency import run_in_threadpool

from app import database
from app.config import Settings
from app.exceptions import ConfigurationError, PersistenceError, UpstreamError
from app.models import (
    ACTION_CHECK_OUT,
    AttendanceEvent,
    AttendanceRecord,
    LocationInfo,
    RequestInfo,
    UserInfo,
    is_checkin_action,
)
from app.services.google_sheets import SheetsClient
from app.services.summary_service import day_range, month_range
from app.state_store import TTLCache
from app.utils import minutes_of_day, parse_timestamp, to_local, to_utc_iso

logger = logging.getLogger(__name__)


# ============================================
# Lateness
# ============================================

class LatenessPolicy:
    def __init__(self, workday_start: time, exempt_actions: Iterable[str] = (), tz_name: str = "Asia/Seoul"):
        self.workday_start = workday_start
        self.exempt_actions: FrozenSet[str] = frozenset(exempt_actions)
        self.tz_name = tz_name

    @property
    def start_minutes(self) -> int:
        return self.workday_start.hour * 60 + self.workday_start.minute

    def is_exempt(self, action: str) -> bool:
        return action in self.exempt_actions

    def evaluate(self, action: str, timestamp: datetime) -> Tuple[bool, int]:
        """Return (is_late, minutes_late) for an action at `timestamp`."""
        if not is_checkin_action(action) or self.is_exempt(action):
            return False, 0
        diff = minutes_of_day(to_local(timestamp, self.tz_name)) - self.start_minutes
        if diff > 0:
            return True, diff
        return False, 0


# ============================================
# Backends
# ============================================

class AttendanceBackend(ABC):
    name = "backend"

    @abstractmethod
    async def save(self, event: AttendanceEvent) -> None:
        ...

    @abstractmethod
    async def list_records(self, start: datetime, end: datetime) -> List[AttendanceRecord]:
        """Records with start <= timestamp < end, oldest first."""

    @abstractmethod
    async def count_users(self) -> int:
        ...

    @abstractmethod
    async def save_summary(self, summary: Dict[str, Any]) -> str:
        """Persist a weekly summary dict, returning where it went."""


class SheetsAttendanceBackend(AttendanceBackend):
    """Google Sheets backend. The gspread client is built on first use."""

    name = "sheets"

    def __init__(self, client_factory: Callable[[], SheetsClient]):
        self._client_factory = client_factory
        self._client: Optional[SheetsClient] = None

    @property
    def client(self) -> SheetsClient:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    async def save(self, event: AttendanceEvent) -> None:
        try:
            await run_in_threadpool(self.client.write_attendance_row, event)
        except UpstreamError as e:
            raise PersistenceError(f"Google Sheets write failed: {e}") from e

    async def _all_records(self) -> List[AttendanceRecord]:
        return await run_in_threadpool(self.client.read_records)

    async def list_records(self, start: datetime, end: datetime) -> List[AttendanceRecord]:
        records = [r for r in await self._all_records() if start <= r.timestamp < end]
        records.sort(key=lambda r: r.timestamp)
        return records

    async def count_users(self) -> int:
        return len({r.name for r in await self._all_records() if r.name})

    async def save_summary(self, summary: Dict[str, Any]) -> str:
        return await run_in_threadpool(self.client.save_weekly_summary, summary)


def record_from_row(row: Dict[str, Any]) -> Optional[AttendanceRecord]:
    timestamp = parse_timestamp(row.get("timestamp"))
    if timestamp is None:
        return None
    return AttendanceRecord(
        name=row.get("name") or "",
        department=row.get("department") or "",
        action=row.get("action") or "",
        timestamp=timestamp,
        user_id=row.get("account_id") or "",
        email=row.get("email") or "",
        method=row.get("method") or "",
        is_late=bool(row.get("is_late")),
        minutes_late=int(row.get("minutes_late") or 0),
        image_url=row.get("image_url") or "",
        notes=row.get("notes") or "",
    )


class DatabaseAttendanceBackend(AttendanceBackend):
    """Supabase / SQLite backend (see app.database)."""

    name = "database"

    def __init__(self, summary_sheets: Optional[Callable[[], SheetsClient]] = None):
        self._summary_sheets = summary_sheets

    async def save(self, event: AttendanceEvent) -> None:
        info = event.user_info
        profile = {
            "name": info.name,
            "email": info.email,
            "department": info.department,
            "position": info.position,
        }
        user_pk = await run_in_threadpool(database.find_or_create_user, event.user_id, profile)
        if user_pk is None:
            raise PersistenceError(f"Could not find or create user {event.user_id}")

        location = event.location
        row = {
            "user_id": user_pk,
            "action": event.action,
            "method": event.method,
            "timestamp": to_utc_iso(event.timestamp),
            "is_late": int(event.is_late),
            "minutes_late": event.minutes_late,
            "image_url": event.image_url,
            "address": location.address if location else None,
            "latitude": location.latitude if location else None,
            "longitude": location.longitude if location else None,
            "location_verified": int(location.verified) if location else None,
            "notes": " / ".join(n for n in (event.notes, location.notes if location else "") if n) or None,
            "domain_id": event.domain_id,
            "ip_address": event.request_info.ip if event.request_info else None,
        }
        attendance_id = await run_in_threadpool(database.insert_attendance, row)
        if attendance_id is None:
            raise PersistenceError(f"Could not insert attendance for {event.user_id}")

    async def list_records(self, start: datetime, end: datetime) -> List[AttendanceRecord]:
        rows = await run_in_threadpool(database.get_attendance_between, start, end)
        records = []
        for row in rows:
            record = record_from_row(row)
            if record is None:
                logger.warning(f"Skipping attendance row with bad timestamp: id={row.get('id')}")
                continue
            records.append(record)
        return records

    async def count_users(self) -> int:
        return await run_in_threadpool(database.count_users)

    async def save_summary(self, summary: Dict[str, Any]) -> str:
        if self._summary_sheets is None:
            raise ConfigurationError("Saving weekly summaries requires Google Sheets to be configured")
        return await run_in_threadpool(self._summary_sheets().save_weekly_summary, summary)


def make_sheets_factory(settings: Settings, name_cache: Optional[TTLCache] = None) -> Callable[[], SheetsClient]:
    cache = name_cache or TTLCache(ttl=settings.SHEET_NAME_CACHE_TTL)

    def factory() -> SheetsClient:
        return SheetsClient(
            spreadsheet_id=settings.spreadsheet_id,
            credentials_info=settings.google_service_account_info(),
            worksheet=settings.GOOGLE_SHEET_WORKSHEET,
            write_strategy=settings.SHEETS_WRITE_STRATEGY,
            name_cache=cache,
            tz_name=settings.TIMEZONE,
        )

    return factory


def build_backend(settings: Settings) -> AttendanceBackend:
    """Pick the persistence backend named by ATTENDANCE_BACKEND."""
    sheets_factory = make_sheets_factory(settings)
    if settings.ATTENDANCE_BACKEND == "database":
        database.init_db()
        summary_sheets = sheets_factory if settings.spreadsheet_id else None
        return DatabaseAttendanceBackend(summary_sheets=summary_sheets)
    if settings.ATTENDANCE_BACKEND == "sheets":
        return SheetsAttendanceBackend(sheets_factory)
    raise ConfigurationError(f"Unknown ATTENDANCE_BACKEND: {settings.ATTENDANCE_BACKEND!r}")


# ============================================
# Recorder
# ============================================

class AttendanceRecorder:
    def __init__(self, backend: AttendanceBackend, policy: LatenessPolicy):
        self.backend = backend
        self.policy = policy

    async def record(
        self,
        user_id: str,
        domain_id: int,
        action: str,
        timestamp: datetime,
        method: str,
        user_info: UserInfo,
        image_url: Optional[str] = None,
        location: Optional[LocationInfo] = None,
        request_info: Optional[RequestInfo] = None,
        notes: str = "",
    ) -> AttendanceEvent:
        is_late, minutes_late = self.policy.evaluate(action, timestamp)
        event = AttendanceEvent(
            user_id=user_id,
            domain_id=domain_id,
            action=action,
            timestamp=timestamp,
            method=method,
            user_info=user_info,
            image_url=image_url,
            location=location,
            request_info=request_info,
            is_late=is_late,
            minutes_late=minutes_late,
            notes=notes,
        )
        try:
            await self.backend.save(event)
        except UpstreamError as e:
            raise PersistenceError(str(e)) from e

        logger.info(
            f"📝 Recorded {action} for {user_id} via {self.backend.name}"
            f" (late={is_late}, minutes_late={minutes_late})"
        )
        return event


# ============================================
# Daily statistics
# ============================================

def _round_half_up(value: float, digits: int = 1) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def working_hours_by_user(records: Iterable[AttendanceRecord]) -> Dict[str, float]:
    """Pair each check-in with the next check-out of the same user and sum the hours."""
    per_user: Dict[str, List[AttendanceRecord]] = defaultdict(list)
    for record in records:
        per_user[record.user_id or record.name].append(record)

    hours: Dict[str, float] = {}
    for key, items in per_user.items():
        checkin_at: Optional[datetime] = None
        for record in sorted(items, key=lambda r: r.timestamp):
            if is_checkin_action(record.action):
                checkin_at = record.timestamp
            elif record.action == ACTION_CHECK_OUT and checkin_at is not None:
                hours[key] = hours.get(key, 0.0) + (record.timestamp - checkin_at).total_seconds() / 3600
                checkin_at = None
    return hours


def compute_daily_stats(records: List[AttendanceRecord], total_users: int) -> Dict[str, Any]:
    checkins = [r for r in records if is_checkin_action(r.action)]
    hours = working_hours_by_user(records)
    average = _round_half_up(sum(hours.values()) / len(hours)) if hours else 0
    return {
        "totalUsers": total_users,
        "checkedInToday": len({r.user_id or r.name for r in checkins}),
        "lateToday": sum(1 for r in checkins if r.is_late),
        "averageWorkingHours": average,
    }


# ============================================
# Per-user status
# ============================================

@dataclass
class UserStatus:
    first_checkin: Optional[datetime] = None
    working_hours: float = 0.0
    checkin_count: int = 0
    checkout_count: int = 0
    late_count: int = 0


def user_working_hours(records: Iterable[AttendanceRecord], user_id: str) -> float:
    hours = working_hours_by_user(r for r in records if r.user_id == user_id)
    return _round_half_up(hours.get(user_id, 0.0))


async def today_working_hours(backend: AttendanceBackend, user_id: str, moment: datetime, tz_name: str) -> float:
    start, end = day_range(to_local(moment, tz_name).date(), tz_name)
    return user_working_hours(await backend.list_records(start, end), user_id)


async def load_user_status(backend: AttendanceBackend, user_id: str, moment: datetime, tz_name: str) -> UserStatus:
    """
    Today's first check-in and working hours, plus this month's check-in,
    check-out and late counts, for one user. Counts are per record.
    """
    today = to_local(moment, tz_name).date()
    day_start, day_end = day_range(today, tz_name)
    month_start, month_end = month_range(today, tz_name)

    records = [r for r in await backend.list_records(month_start, month_end) if r.user_id == user_id]
    todays = [r for r in records if day_start <= r.timestamp < day_end]
    checkins = [r for r in records if is_checkin_action(r.action)]

    return UserStatus(
        first_checkin=min((r.timestamp for r in todays if is_checkin_action(r.action)), default=None),
        working_hours=user_working_hours(todays, user_id),
        checkin_count=len(checkins),
        checkout_count=sum(1 for r in records if r.action == ACTION_CHECK_OUT),
        late_count=sum(1 for r in checkins if r.is_late),
    )
