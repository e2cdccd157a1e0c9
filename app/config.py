"""
Application Configuration
=========================
All settings are read from environment variables (a local .env file is
loaded first). Nothing here fails at import time: each integration checks
its own credentials when it is first used and raises ConfigurationError.
"""
import os
import re
import json
import logging
from dataclasses import dataclass, field
from datetime import time
from typing import Optional, Dict, Any, FrozenSet

from dotenv import load_dotenv

from app.exceptions import ConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)

IS_VERCEL = os.getenv("VERCEL", "0") == "1" or os.getenv("VERCEL_ENV") is not None

DEFAULT_EXEMPT_ACTIONS = "연차,반차,오전반차,오후반차,외근,출장,재택"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {value!r}, using {default}")
        return default


def _multiline_key(value: str) -> str:
    """Private keys stored in env vars usually carry literal \\n sequences."""
    return value.replace("\\n", "\n") if value else value


@dataclass
class Settings:
    """Runtime configuration for the attendance bot."""

    # NAVER WORKS bot credentials
    WORKS_CLIENT_ID: str = field(default_factory=lambda: os.getenv("NAVER_WORKS_CLIENT_ID", ""))
    WORKS_CLIENT_SECRET: str = field(default_factory=lambda: os.getenv("NAVER_WORKS_CLIENT_SECRET", ""))
    WORKS_SERVICE_ACCOUNT: str = field(default_factory=lambda: os.getenv("NAVER_WORKS_SERVICE_ACCOUNT", ""))
    WORKS_PRIVATE_KEY: str = field(default_factory=lambda: _multiline_key(os.getenv("NAVER_WORKS_PRIVATE_KEY", "")))
    WORKS_BOT_ID: str = field(default_factory=lambda: os.getenv("NAVER_WORKS_BOT_ID", ""))
    WORKS_BOT_SECRET: str = field(default_factory=lambda: os.getenv("NAVER_WORKS_BOT_SECRET", ""))
    WORKS_API_URL: str = field(default_factory=lambda: os.getenv("NAVER_WORKS_API_URL", "https://www.worksapis.com/v1.0"))
    WORKS_TOKEN_URL: str = field(default_factory=lambda: os.getenv("NAVER_WORKS_TOKEN_URL", "https://auth.worksmobile.com/oauth2/v2.0/token"))
    WORKS_SCOPE: str = field(default_factory=lambda: os.getenv("NAVER_WORKS_SCOPE", "bot user.read"))

    # Google Sheets
    GOOGLE_SERVICE_ACCOUNT_JSON: str = field(default_factory=lambda: os.getenv("GOOGLE_SERVICE_ACCOUNT_JSON", ""))
    GOOGLE_SHEET_URL: str = field(default_factory=lambda: os.getenv("GOOGLE_SHEET_URL", ""))
    GOOGLE_SPREADSHEET_ID: str = field(default_factory=lambda: os.getenv("GOOGLE_SPREADSHEET_ID", ""))
    GOOGLE_SHEET_WORKSHEET: str = field(default_factory=lambda: os.getenv("GOOGLE_SHEET_WORKSHEET", "0"))
    SHEETS_WRITE_STRATEGY: str = field(default_factory=lambda: os.getenv("SHEETS_WRITE_STRATEGY", "append"))
    SHEET_NAME_CACHE_TTL: int = field(default_factory=lambda: _env_int("SHEET_NAME_CACHE_TTL", 300))

    # Cloudinary
    CLOUDINARY_CLOUD_NAME: str = field(default_factory=lambda: os.getenv("CLOUDINARY_CLOUD_NAME", ""))
    CLOUDINARY_API_KEY: str = field(default_factory=lambda: os.getenv("CLOUDINARY_API_KEY", ""))
    CLOUDINARY_API_SECRET: str = field(default_factory=lambda: os.getenv("CLOUDINARY_API_SECRET", ""))
    CLOUDINARY_FOLDER: str = field(default_factory=lambda: os.getenv("CLOUDINARY_FOLDER", "attendance"))

    # Attendance policy
    ATTENDANCE_BACKEND: str = field(default_factory=lambda: os.getenv("ATTENDANCE_BACKEND", "sheets").lower())
    TIMEZONE: str = field(default_factory=lambda: os.getenv("TIMEZONE", "Asia/Seoul"))
    WORKDAY_START: str = field(default_factory=lambda: os.getenv("WORKDAY_START", "09:00"))
    LATE_EXEMPT_ACTIONS: str = field(default_factory=lambda: os.getenv("LATE_EXEMPT_ACTIONS", DEFAULT_EXEMPT_ACTIONS))
    CHECKIN_COOLDOWN_SECONDS: int = field(default_factory=lambda: _env_int("CHECKIN_COOLDOWN_SECONDS", 30))
    HOME_COUNTRY: str = field(default_factory=lambda: os.getenv("HOME_COUNTRY", "KR"))

    # Weekly summary scheduler (Python weekday: Monday=0 ... Sunday=6)
    SUMMARY_WEEKDAY: int = field(default_factory=lambda: _env_int("SUMMARY_WEEKDAY", 4))
    SUMMARY_HOUR: int = field(default_factory=lambda: _env_int("SUMMARY_HOUR", 14))

    # Admin endpoints
    ADMIN_API_TOKEN: str = field(default_factory=lambda: os.getenv("ADMIN_API_TOKEN", ""))

    HTTP_TIMEOUT_SECONDS: int = field(default_factory=lambda: _env_int("HTTP_TIMEOUT_SECONDS", 15))

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------
    @property
    def spreadsheet_id(self) -> str:
        if self.GOOGLE_SPREADSHEET_ID:
            return self.GOOGLE_SPREADSHEET_ID
        return extract_sheet_id(self.GOOGLE_SHEET_URL)

    @property
    def workday_start(self) -> time:
        return parse_hhmm(self.WORKDAY_START)

    @property
    def late_exempt_actions(self) -> FrozenSet[str]:
        return frozenset(a.strip() for a in self.LATE_EXEMPT_ACTIONS.split(",") if a.strip())

    def works_credentials_missing(self) -> list:
        required = [
            ("NAVER_WORKS_CLIENT_ID", self.WORKS_CLIENT_ID),
            ("NAVER_WORKS_CLIENT_SECRET", self.WORKS_CLIENT_SECRET),
            ("NAVER_WORKS_SERVICE_ACCOUNT", self.WORKS_SERVICE_ACCOUNT),
            ("NAVER_WORKS_PRIVATE_KEY", self.WORKS_PRIVATE_KEY),
        ]
        return [name for name, value in required if not value]

    def google_service_account_info(self) -> Dict[str, Any]:
        """
        Build the service-account dict either from GOOGLE_SERVICE_ACCOUNT_JSON
        or from the individual GOOGLE_SERVICE_ACCOUNT_* variables.
        """
        if self.GOOGLE_SERVICE_ACCOUNT_JSON:
            try:
                info = json.loads(self.GOOGLE_SERVICE_ACCOUNT_JSON)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"GOOGLE_SERVICE_ACCOUNT_JSON is not valid JSON: {e}")
        else:
            info = {
                "type": os.getenv("GOOGLE_SERVICE_ACCOUNT_TYPE", "service_account"),
                "project_id": os.getenv("GOOGLE_SERVICE_ACCOUNT_PROJECT_ID", ""),
                "private_key_id": os.getenv("GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY_ID", ""),
                "private_key": _multiline_key(os.getenv("GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY", "")),
                "client_email": os.getenv("GOOGLE_SERVICE_ACCOUNT_CLIENT_EMAIL", ""),
                "client_id": os.getenv("GOOGLE_SERVICE_ACCOUNT_CLIENT_ID", ""),
                "token_uri": os.getenv("GOOGLE_SERVICE_ACCOUNT_TOKEN_URI", "https://oauth2.googleapis.com/token"),
            }
        if isinstance(info.get("private_key"), str):
            info["private_key"] = _multiline_key(info["private_key"])
        return info

    def integration_status(self) -> Dict[str, bool]:
        return {
            "naver_works": not self.works_credentials_missing() and bool(self.WORKS_BOT_ID),
            "webhook_secret": bool(self.WORKS_BOT_SECRET),
            "google_sheets": bool(self.spreadsheet_id) and bool(
                self.GOOGLE_SERVICE_ACCOUNT_JSON or os.getenv("GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY")
            ),
            "cloudinary": bool(self.CLOUDINARY_CLOUD_NAME and self.CLOUDINARY_API_KEY and self.CLOUDINARY_API_SECRET),
        }


def extract_sheet_id(url: Optional[str]) -> str:
    """Pull the spreadsheet ID out of a Google Sheets URL."""
    if not url:
        return ""
    match = re.search(r"/spreadsheets/d/([a-zA-Z0-9-_]+)", url)
    return match.group(1) if match else ""


def parse_hhmm(value: str) -> time:
    try:
        hour, minute = value.strip().split(":")
        return time(int(hour), int(minute))
    except (ValueError, AttributeError):
        raise ConfigurationError(f"Invalid HH:MM time: {value!r}")


settings = Settings()


def get_settings() -> Settings:
    """FastAPI dependency returning the process-wide settings."""
    return settings
