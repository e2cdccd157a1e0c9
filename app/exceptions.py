"""
Error types shared across the attendance bot.
"""
from typing import Any, Dict, Optional


class AttendanceError(Exception):
    """Base error for the attendance bot."""

    def to_dict(self) -> Dict[str, Any]:
        return {"error": str(self), "type": self.__class__.__name__}


class ConfigurationError(AttendanceError):
    """Required credentials or settings are missing or malformed."""


class UpstreamError(AttendanceError):
    """A call to NAVER WORKS, Google Sheets or Cloudinary did not succeed."""

    def __init__(self, service: str, status_code: Optional[int] = None, body: str = "", message: str = ""):
        self.service = service
        self.status_code = status_code
        self.body = body
        super().__init__(message or f"{service} request failed ({status_code}): {body[:300]}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"service": self.service, "status_code": self.status_code})
        return data


class InvalidImageError(AttendanceError):
    """Downloaded attachment is not an acceptable image."""


class PersistenceError(AttendanceError):
    """Attendance records could not be written to or read from the configured backend."""
