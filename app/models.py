"""
Data Models
===========
Pydantic models for inbound NAVER WORKS webhook payloads and dataclasses
for the attendance records the bot writes and reads back.

Webhook content is a tagged union: a postback always wins, otherwise the
content "type" decides which model is built. Unknown types become
UnsupportedContent so the router can log and drop them.
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel

from app.utils import parse_timestamp, to_utc_iso


# ============================================
# Action labels and methods
# ============================================
ACTION_CHECK_IN = "출근"
ACTION_CHECK_OUT = "퇴근"
ACTION_IMAGE_UPLOAD = "이미지업로드"
ACTION_LOCATION_CHECK_IN = "위치출근"

METHOD_LOCATION = "location"
METHOD_PHOTO = "photo"
METHOD_TEXT = "text"
METHOD_MANUAL = "manual"

PLACEHOLDER = "정보없음"


def is_checkin_action(action: str) -> bool:
    """출근 and 위치출근 are check-ins; 퇴근 and leave labels are not."""
    return bool(action) and ACTION_CHECK_IN in action


# ============================================
# Webhook payload (tagged union on content)
# ============================================
class WebhookSource(BaseModel):
    userId: str
    domainId: int
    channelId: Optional[str] = None


class PostbackContent(BaseModel):
    type: str
    postback: str
    text: Optional[str] = None


class TextContent(BaseModel):
    type: str = "text"
    text: Optional[str] = None


class ImageContent(BaseModel):
    type: str = "image"
    fileId: Optional[str] = None


class LocationContent(BaseModel):
    type: str = "location"
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class UnsupportedContent(BaseModel):
    type: str


WebhookContent = Union[PostbackContent, TextContent, ImageContent, LocationContent, UnsupportedContent]

_CONTENT_MODELS = {
    "text": TextContent,
    "image": ImageContent,
    "location": LocationContent,
}


def parse_content(content: Dict[str, Any]) -> WebhookContent:
    if content.get("postback"):
        return PostbackContent(**{k: content.get(k) for k in ("type", "postback", "text")})
    model = _CONTENT_MODELS.get(content.get("type"))
    if model is None:
        return UnsupportedContent(type=str(content.get("type")))
    allowed = model.model_fields.keys()
    return model(**{k: v for k, v in content.items() if k in allowed})


class WebhookEvent(BaseModel):
    """A validated inbound event. Build it with from_payload()."""
    type: str
    source: WebhookSource
    content: WebhookContent
    issuedTime: datetime

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "WebhookEvent":
        source = data["source"]
        return cls(
            type=data["type"],
            source=WebhookSource(
                userId=str(source["userId"]),
                domainId=int(source["domainId"]),
                channelId=source.get("channelId"),
            ),
            content=parse_content(data["content"]),
            issuedTime=parse_timestamp(data["issuedTime"]),
        )

    @property
    def user_id(self) -> str:
        return self.source.userId

    @property
    def channel_id(self) -> Optional[str]:
        return self.source.channelId


# ============================================
# Attendance domain
# ============================================
@dataclass
class UserInfo:
    name: str = PLACEHOLDER
    email: str = PLACEHOLDER
    department: str = PLACEHOLDER
    level: str = PLACEHOLDER
    position: str = PLACEHOLDER
    employee_number: str = PLACEHOLDER

    @classmethod
    def fallback(cls, user_id: str) -> "UserInfo":
        """Placeholder profile used when the platform lookup fails."""
        return cls(name=f"{user_id[:8]}...")


@dataclass
class LocationInfo:
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    verified: bool = True
    notes: str = ""


@dataclass
class RequestInfo:
    ip: str = ""
    user_agent: str = ""
    country: str = ""
    region: str = ""
    city: str = ""


@dataclass
class AttendanceEvent:
    """One accepted action. Immutable once written to a backend."""
    user_id: str
    domain_id: int
    action: str
    timestamp: datetime
    method: str
    user_info: UserInfo = field(default_factory=UserInfo)
    image_url: Optional[str] = None
    location: Optional[LocationInfo] = None
    request_info: Optional[RequestInfo] = None
    is_late: bool = False
    minutes_late: int = 0
    notes: str = ""


@dataclass
class AttendanceRecord:
    """An attendance row read back from either backend."""
    name: str
    department: str
    action: str
    timestamp: datetime
    user_id: str = ""
    email: str = ""
    method: str = ""
    is_late: bool = False
    minutes_late: int = 0
    image_url: str = ""
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = to_utc_iso(self.timestamp)
        return data
