"""
Google Sheets Integration Service - Service Account Version
Stores attendance rows in a spreadsheet and reads them back for reports.

Authentication: service-account credentials (GOOGLE_SERVICE_ACCOUNT_JSON or the
individual GOOGLE_SERVICE_ACCOUNT_* variables), exchanged for an access token
by google-auth's JWT-bearer flow. gspread caches and refreshes the token.

gspread is synchronous. Async callers go through run_in_threadpool
(see attendance_service.SheetsAttendanceBackend).

Row layout (A-V):
  타임스탬프 | 한국시간 | 이름 | 이메일 | 부서 | 직급 | 직책 | 사번 | 액션 | 도메인ID |
  출처 | 이미지URL | 방법 | 지각여부 | 지각(분) | 주소 | 위도 | 경도 | 위치확인 |
  비고 | 사용자ID | IP
"""
import logging
from typing import Optional, List, Dict, Any

import gspread
from google.auth.exceptions import GoogleAuthError
from google.oauth2.service_account import Credentials

from app.exceptions import ConfigurationError, UpstreamError
from app.models import AttendanceEvent, AttendanceRecord
from app.state_store import TTLCache
from app.utils import format_local, parse_timestamp, to_utc_iso

logger = logging.getLogger(__name__)

SERVICE_NAME = "google_sheets"

# Google API scopes
SCOPES = ['https://www.googleapis.com/auth/spreadsheets']

DEFAULT_SHEET_NAME = "Sheet1"
SOURCE_LABEL = "네이버웍스 봇"
SUMMARY_SHEET_PREFIX = "주간결산_"

HEADER = [
    "타임스탬프", "한국시간", "이름", "이메일", "부서", "직급", "직책", "사번",
    "액션", "도메인ID", "출처", "이미지URL", "방법", "지각여부", "지각(분)",
    "주소", "위도", "경도", "위치확인", "비고", "사용자ID", "IP",
]
HEADER_RANGE = "A1:V1"

# Minimum cells a row needs before it can be read back (through 액션)
MIN_ROW_CELLS = 9


# ============================================
# Credentials
# ============================================

def load_credentials(service_account_info: Dict[str, Any]) -> Credentials:
    """
    Build service-account credentials, raising ConfigurationError when the
    credential is incomplete or the key cannot be parsed.
    """
    required_fields = ['private_key', 'client_email']
    missing_fields = [f for f in required_fields if not service_account_info.get(f)]
    if missing_fields:
        raise ConfigurationError(f"Google service account missing required fields: {missing_fields}")

    if service_account_info.get('type', 'service_account') != 'service_account':
        raise ConfigurationError("Google credential must be a service account (type: service_account)")

    if "BEGIN PRIVATE KEY" not in service_account_info['private_key']:
        raise ConfigurationError("Google service account private_key is not a PEM key")

    try:
        creds = Credentials.from_service_account_info(service_account_info, scopes=SCOPES)
    except (ValueError, GoogleAuthError) as e:
        raise ConfigurationError(f"Invalid Google service account credential: {e}")

    logger.info(f"Google Service Account credentials loaded (email: {service_account_info.get('client_email')})")
    return creds


# ============================================
# Row mapping
# ============================================

def _coordinate_cell(value: Optional[float]) -> Any:
    return "" if value is None else value


def build_row(event: AttendanceEvent, tz_name: str) -> List[Any]:
    """Flatten an AttendanceEvent into one A-V row."""
    info = event.user_info
    location = event.location
    request_info = event.request_info

    if location is None:
        verified = ""
    else:
        verified = "확인" if location.verified else "미확인"

    notes = [n for n in (event.notes, location.notes if location else "") if n]

    return [
        to_utc_iso(event.timestamp),
        format_local(event.timestamp, tz_name),
        info.name,
        info.email,
        info.department,
        info.level,
        info.position,
        info.employee_number,
        event.action,
        event.domain_id,
        SOURCE_LABEL,
        event.image_url or "",
        event.method,
        "Y" if event.is_late else "N",
        event.minutes_late if event.is_late else 0,
        (location.address or "") if location else "",
        _coordinate_cell(location.latitude) if location else "",
        _coordinate_cell(location.longitude) if location else "",
        verified,
        " / ".join(notes),
        event.user_id,
        request_info.ip if request_info else "",
    ]


def _cell(row: List[Any], index: int) -> str:
    if index < len(row) and row[index] is not None:
        return str(row[index]).strip()
    return ""


def parse_row(row: List[Any]) -> Optional[AttendanceRecord]:
    """Map a sheet row back to an AttendanceRecord, or None if it is unusable."""
    if len(row) < MIN_ROW_CELLS:
        return None

    timestamp = parse_timestamp(_cell(row, 0))
    if timestamp is None:
        return None

    minutes_cell = _cell(row, 14)
    try:
        minutes_late = int(float(minutes_cell)) if minutes_cell else 0
    except (ValueError, OverflowError):
        minutes_late = 0

    return AttendanceRecord(
        name=_cell(row, 2),
        email=_cell(row, 3),
        department=_cell(row, 4),
        action=_cell(row, 8),
        timestamp=timestamp,
        image_url=_cell(row, 11),
        method=_cell(row, 12),
        is_late=_cell(row, 13).upper() == "Y",
        minutes_late=minutes_late,
        notes=_cell(row, 19),
        user_id=_cell(row, 20),
    )


def parse_rows(rows: List[List[Any]]) -> List[AttendanceRecord]:
    """Parse every data row, skipping the header and warning on bad rows."""
    records = []
    for index, row in enumerate(rows, start=1):
        if not row or _cell(row, 0) == HEADER[0]:
            continue
        record = parse_row(row)
        if record is None:
            logger.warning(f"Skipping unreadable sheet row {index}: {row[:3]}")
            continue
        records.append(record)
    return records


def build_summary_rows(summary: Dict[str, Any]) -> List[List[Any]]:
    """Lay out a weekly summary dict as sheet rows."""
    latest = summary["latestCheckin"]
    rows = [
        ["주간 결산", f"{summary['weekStart']} ~ {summary['weekEnd']}"],
        ["총 직원 수", summary["totalEmployees"]],
        ["총 출근 횟수", summary["totalCheckins"]],
        ["평균 출근 시간", summary["averageCheckinTime"]],
        ["최근 출근", latest["name"], latest["time"], latest["department"]],
        [],
        ["부서", "출근 횟수", "평균 출근 시간", "최근 출근자", "최근 출근 시간"],
    ]
    for department, stats in sorted(summary["departmentStats"].items()):
        dept_latest = stats["latestCheckin"]
        rows.append([
            department,
            stats["totalCheckins"],
            stats["averageTime"],
            dept_latest["name"],
            dept_latest["time"],
        ])
    return rows


# ============================================
# Client
# ============================================

class SheetsClient:
    """
    Thin wrapper over a gspread spreadsheet.

    The worksheet selector is either a sheet name or a numeric index; index
    lookups hit the metadata API, so the resolved name is cached.
    """

    def __init__(
        self,
        spreadsheet_id: str,
        credentials_info: Dict[str, Any],
        worksheet: str = "0",
        write_strategy: str = "append",
        name_cache: Optional[TTLCache] = None,
        tz_name: str = "Asia/Seoul",
    ):
        if not spreadsheet_id:
            raise ConfigurationError("Spreadsheet ID could not be determined from GOOGLE_SHEET_URL / GOOGLE_SPREADSHEET_ID")
        if write_strategy not in ("append", "next_row"):
            raise ConfigurationError(f"Unknown SHEETS_WRITE_STRATEGY: {write_strategy!r}")

        self.spreadsheet_id = spreadsheet_id
        self.credentials_info = credentials_info
        self.worksheet_selector = (worksheet or "0").strip()
        self.write_strategy = write_strategy
        self.name_cache = name_cache or TTLCache(ttl=300)
        self.tz_name = tz_name
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._worksheets: Dict[str, gspread.Worksheet] = {}

    def _connect(self) -> gspread.Spreadsheet:
        if self._client is None:
            self._client = gspread.authorize(load_credentials(self.credentials_info))
            logger.info("Google Sheets client initialized successfully")
        return self._client.open_by_key(self.spreadsheet_id)

    def _open(self) -> gspread.Spreadsheet:
        # open_by_key fetches metadata, so the handle is kept until a call fails
        if self._spreadsheet is None:
            self._spreadsheet = self._connect()
        return self._spreadsheet

    def forget_handles(self) -> None:
        self._spreadsheet = None
        self._worksheets.clear()

    def _call(self, what: str, func, *args, **kwargs):
        """Run a gspread call, turning API and auth failures into UpstreamError."""
        try:
            return func(*args, **kwargs)
        except gspread.exceptions.APIError as e:
            status = getattr(e.response, "status_code", None)
            body = getattr(e.response, "text", str(e))
            logger.error(f"Google Sheets {what} failed: {status} {body[:300]}")
            raise UpstreamError(SERVICE_NAME, status, body)
        except GoogleAuthError as e:
            logger.error(f"Google Sheets authentication failed during {what}: {e}")
            raise UpstreamError(SERVICE_NAME, message=f"Authentication failed: {e}")

    # ------------------------------------------------------------------
    # Worksheet resolution
    # ------------------------------------------------------------------
    def resolve_sheet_name(self) -> str:
        selector = self.worksheet_selector
        if not selector.isdigit():
            return selector

        cache_key = f"{self.spreadsheet_id}:{selector}"
        cached = self.name_cache.get(cache_key)
        if cached:
            return cached

        sheet_name = DEFAULT_SHEET_NAME
        try:
            worksheets = self._call("metadata fetch", lambda: self._open().worksheets())
            index = int(selector)
            if index < len(worksheets):
                sheet_name = worksheets[index].title
                logger.info(f"Sheet index {index} resolved to '{sheet_name}'")
            else:
                logger.warning(f"No sheet at index {index}, using {DEFAULT_SHEET_NAME}")
        except UpstreamError as e:
            logger.warning(f"Sheet name lookup failed, using {DEFAULT_SHEET_NAME}: {e}")
            return sheet_name

        self.name_cache.set(cache_key, sheet_name)
        return sheet_name

    def _worksheet(self) -> gspread.Worksheet:
        name = self.resolve_sheet_name()
        cached = self._worksheets.get(name)
        if cached is not None:
            return cached

        spreadsheet = self._call("spreadsheet open", self._open)
        try:
            worksheet = self._call("worksheet open", spreadsheet.worksheet, name)
        except gspread.exceptions.WorksheetNotFound:
            logger.info(f"Worksheet '{name}' not found, creating it")
            worksheet = self._call("worksheet create", spreadsheet.add_worksheet, title=name, rows=1000, cols=len(HEADER))
        self._worksheets[name] = worksheet
        return worksheet

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def ensure_header(self, worksheet: gspread.Worksheet) -> None:
        """Write the header row if A1 is not the expected header. Failures are logged only."""
        try:
            first_row = worksheet.row_values(1)
            if first_row and first_row[0] == HEADER[0] and len(first_row) >= len(HEADER):
                return
            logger.info(f"Header missing on '{worksheet.title}', writing it")
            worksheet.update(HEADER_RANGE, [HEADER], value_input_option='RAW')
        except Exception as e:
            logger.warning(f"Header check failed on '{worksheet.title}': {e}")

    def write_attendance_row(self, event: AttendanceEvent) -> Dict[str, Any]:
        worksheet = self._worksheet()
        self.ensure_header(worksheet)
        row = build_row(event, self.tz_name)

        try:
            if self.write_strategy == "next_row":
                next_row = len(self._call("column read", worksheet.col_values, 1)) + 1
                range_name = f"A{next_row}:V{next_row}"
                self._call("row update", worksheet.update, range_name, [row], value_input_option='RAW')
            else:
                self._call("row append", worksheet.append_row, row, value_input_option='RAW')
                range_name = None
        except UpstreamError:
            self.forget_handles()
            raise

        logger.info(f"✅ Attendance row written to '{worksheet.title}': {event.action} / {event.user_info.name}")
        return {"sheet": worksheet.title, "range": range_name}

    def save_weekly_summary(self, summary: Dict[str, Any]) -> str:
        """Write a summary into 주간결산_<weekStart>, replacing earlier content."""
        title = f"{SUMMARY_SHEET_PREFIX}{summary['weekStart']}"
        spreadsheet = self._call("spreadsheet open", self._open)

        try:
            worksheet = spreadsheet.worksheet(title)
        except gspread.exceptions.WorksheetNotFound:
            worksheet = self._call("worksheet create", spreadsheet.add_worksheet, title=title, rows=100, cols=10)
            logger.info(f"Created summary worksheet: {title}")

        self._call("summary clear", worksheet.clear)
        self._call("summary write", worksheet.update, "A1", build_summary_rows(summary), value_input_option='RAW')
        logger.info(f"✅ Weekly summary saved to '{title}'")
        return title

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def read_rows(self) -> List[List[Any]]:
        worksheet = self._worksheet()
        try:
            return self._call("values read", worksheet.get_all_values)
        except UpstreamError:
            self.forget_handles()
            raise

    def read_records(self) -> List[AttendanceRecord]:
        return parse_rows(self.read_rows())
