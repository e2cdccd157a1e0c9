"""
Shared Utility Functions
========================
Time handling and name formatting used across multiple modules.
Webhook timestamps are UTC instants; everything shown to people or used
for lateness and weekly grouping is expressed in the organization's zone.
"""
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import Any, Dict, Optional, Union
from zoneinfo import ZoneInfo


@lru_cache(maxsize=8)
def get_zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 string (or epoch milliseconds) into an aware UTC datetime.

    Returns None when the value cannot be parsed. Naive values are treated as UTC.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_local(moment: datetime, tz_name: str) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(get_zone(tz_name))


def format_local(moment: datetime, tz_name: str, fmt: str = "%Y-%m-%d %H:%M:%S") -> str:
    return to_local(moment, tz_name).strftime(fmt)


def to_utc_iso(moment: datetime) -> str:
    """UTC ISO string with millisecond precision and a trailing Z."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def minutes_of_day(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def format_minutes(total_minutes: int) -> str:
    """540 -> '09:00'"""
    total_minutes = int(total_minutes) % (24 * 60)
    return f"{total_minutes // 60:02d}:{total_minutes % 60:02d}"


def parse_date_param(value: Optional[str]) -> Optional[date]:
    """Parse a YYYY-MM-DD query parameter; anything else yields None."""
    if not value:
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def build_full_name(user_name: Optional[Dict[str, Any]]) -> str:
    """
    Compose a display name from a NAVER WORKS userName block.

    Korean profiles are written family name first:
    - {"lastName": "홍", "firstName": "길동"} -> "홍 길동"
    - {"firstName": "길동"} -> "길동"
    """
    if not user_name:
        return ""
    last_name = (user_name.get("lastName") or "").strip()
    first_name = (user_name.get("firstName") or "").strip()
    return f"{last_name} {first_name}".strip()


def as_float(value: Union[str, int, float, None]) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
