"""
Request Source Analysis
Captures where a webhook call came from (IP, user agent, Vercel geo headers)
and classifies it for the check-in confirmation message.

Risk levels:
- high:   request country is set and is not the home country
- medium: mobile or tablet user agent
- low:    everything else
"""
import re
from dataclasses import dataclass
from typing import Mapping

from app.models import RequestInfo

HOME_COUNTRY_ALIASES = {
    "KR": {"KR", "KOREA", "SOUTH KOREA"},
}

_TABLET_RE = re.compile(r"ipad|tablet|kindle|silk|playbook|(android(?!.*mobile))", re.IGNORECASE)
_MOBILE_RE = re.compile(r"mobile|iphone|ipod|android|blackberry|opera mini|iemobile|windows phone", re.IGNORECASE)
_DESKTOP_RE = re.compile(r"windows nt|macintosh|mac os x|x11|linux|cros", re.IGNORECASE)


@dataclass
class SourceAnalysis:
    device_type: str
    risk_level: str
    location_info: str
    is_foreign: bool


def _first_ip(forwarded_for: str) -> str:
    return forwarded_for.split(",")[0].strip() if forwarded_for else ""


def extract_request_info(headers: Mapping[str, str]) -> RequestInfo:
    """Build RequestInfo from request headers (case-insensitive mapping)."""
    ip = _first_ip(headers.get("x-forwarded-for", "")) or headers.get("x-real-ip", "") or "unknown"
    return RequestInfo(
        ip=ip,
        user_agent=headers.get("user-agent", ""),
        country=headers.get("x-vercel-ip-country", ""),
        region=headers.get("x-vercel-ip-country-region", ""),
        city=headers.get("x-vercel-ip-city", ""),
    )


def detect_device_type(user_agent: str) -> str:
    if not user_agent:
        return "unknown"
    if _TABLET_RE.search(user_agent):
        return "tablet"
    if _MOBILE_RE.search(user_agent):
        return "mobile"
    if _DESKTOP_RE.search(user_agent):
        return "desktop"
    return "unknown"


def is_foreign_country(country: str, home_country: str = "KR") -> bool:
    if not country:
        return False
    home = home_country.upper()
    allowed = HOME_COUNTRY_ALIASES.get(home, {home})
    return country.strip().upper() not in allowed


def analyze_request_source(info: RequestInfo, home_country: str = "KR") -> SourceAnalysis:
    device_type = detect_device_type(info.user_agent)
    foreign = is_foreign_country(info.country, home_country)

    if foreign:
        risk_level = "high"
    elif device_type in ("mobile", "tablet"):
        risk_level = "medium"
    else:
        risk_level = "low"

    parts = [p for p in (info.city, info.region, info.country) if p]
    location_info = ", ".join(parts) if parts else "알 수 없음"

    return SourceAnalysis(
        device_type=device_type,
        risk_level=risk_level,
        location_info=location_info,
        is_foreign=foreign,
    )
