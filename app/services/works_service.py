"""
NAVER WORKS Bot API Client
==========================
Outbound calls the bot makes to the messaging platform:
- user profile lookup (name, email, department, level, position, employee no.)
- message send to a user or to a channel
- persistent menu create / delete
- attachment download (two steps: API answers 302, file lives at Location)

Every request carries the bearer token from WorksTokenProvider. Non-2xx
responses raise UpstreamError, except in get_user_info() which degrades to
placeholder values so a check-in can still be recorded.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from app.config import Settings
from app.exceptions import ConfigurationError, UpstreamError
from app.models import UserInfo
from app.services.works_auth_service import WorksTokenProvider
from app.utils import build_full_name

logger = logging.getLogger(__name__)

SERVICE_NAME = "naver_works"

CHECKIN_MENU_LABEL = "출근하기"


def _is_success(response: httpx.Response) -> bool:
    return 200 <= response.status_code < 300


def _json_or_success(response: httpx.Response) -> Dict[str, Any]:
    """Some endpoints answer 201/204 with an empty body."""
    if not response.content:
        return {"success": True}
    try:
        return response.json()
    except ValueError:
        return {"success": True}


def _pick_primary(items: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
    if not items:
        return {}
    for item in items:
        if item.get("primary"):
            return item
    return items[0]


def parse_user_profile(data: Dict[str, Any]) -> UserInfo:
    """Map a /users/{id} response onto UserInfo, primary organization first."""
    organization = _pick_primary(data.get("organizations"))
    org_unit = _pick_primary(organization.get("orgUnits"))
    return UserInfo(
        name=build_full_name(data.get("userName")) or "이름없음",
        email=data.get("email") or "이메일없음",
        department=org_unit.get("orgUnitName") or "부서없음",
        level=organization.get("levelName") or "직급없음",
        position=org_unit.get("positionName") or "직책없음",
        employee_number=data.get("employeeNumber") or "사번없음",
    )


def text_message(text: str, quick_reply: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    content: Dict[str, Any] = {"type": "text", "text": text}
    if quick_reply:
        content["quickReply"] = quick_reply
    return {"content": content}


def image_message(url: str, alt_text: str = "") -> Dict[str, Any]:
    return {"content": {"type": "image", "resourceUrl": url, "altText": alt_text}}


class WorksClient:
    """Async client for the NAVER WORKS bot API."""

    def __init__(
        self,
        settings: Settings,
        token_provider: WorksTokenProvider,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.tokens = token_provider
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            follow_redirects=False,
        )

    # ============================================
    # Helpers
    # ============================================
    @property
    def bot_url(self) -> str:
        if not self.settings.WORKS_BOT_ID:
            raise ConfigurationError("NAVER_WORKS_BOT_ID not configured")
        return f"{self.settings.WORKS_API_URL}/bots/{self.settings.WORKS_BOT_ID}"

    async def _headers(self, json_body: bool = True) -> Dict[str, str]:
        token = await self.tokens.get_token()
        headers = {"Authorization": f"Bearer {token}"}
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"NAVER WORKS {method} {url} failed: {e}")
            raise UpstreamError(SERVICE_NAME, message=f"{method} {url} failed: {e}")

    def _raise_for_status(self, response: httpx.Response, what: str) -> None:
        if not _is_success(response):
            logger.error(f"❌ {what} failed: {response.status_code} {response.text[:300]}")
            raise UpstreamError(SERVICE_NAME, response.status_code, response.text)

    # ============================================
    # Users
    # ============================================
    async def get_user_info(self, user_id: str) -> UserInfo:
        """Fetch a profile; any failure yields UserInfo.fallback(user_id)."""
        logger.info(f"Fetching user profile: {user_id}")
        try:
            url = f"{self.settings.WORKS_API_URL}/users/{user_id}"
            response = await self._request("GET", url, headers=await self._headers())
            if not _is_success(response):
                logger.error(f"User profile lookup failed: {response.status_code} {response.text[:300]}")
                return UserInfo.fallback(user_id)
            info = parse_user_profile(response.json())
            logger.info(f"User profile: {info.name} / {info.department}")
            return info
        except Exception as e:
            logger.error(f"User profile lookup error for {user_id}: {e}")
            return UserInfo.fallback(user_id)

    # ============================================
    # Messages
    # ============================================
    async def send_message(
        self,
        user_id: str,
        message: Dict[str, Any],
        channel_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send to the channel when one is given, otherwise directly to the user."""
        if channel_id:
            url = f"{self.bot_url}/channels/{channel_id}/messages"
        else:
            url = f"{self.bot_url}/users/{user_id}/messages"

        response = await self._request("POST", url, headers=await self._headers(), json=message)
        self._raise_for_status(response, "Message send")
        return _json_or_success(response)

    async def send_text(self, user_id: str, text: str, channel_id: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        return await self.send_message(user_id, text_message(text, **kwargs), channel_id)

    # ============================================
    # Persistent menu
    # ============================================
    async def create_persistent_menu(self) -> Dict[str, Any]:
        menu = {
            "content": {
                "actions": [
                    {
                        "type": "location",
                        "label": CHECKIN_MENU_LABEL,
                        "i18nLabels": [{"language": "ko_KR", "label": CHECKIN_MENU_LABEL}],
                    }
                ]
            }
        }
        response = await self._request("POST", f"{self.bot_url}/persistentmenu", headers=await self._headers(), json=menu)
        self._raise_for_status(response, "Persistent menu registration")
        logger.info("✅ Persistent menu registered")
        return _json_or_success(response)

    async def delete_persistent_menu(self) -> Dict[str, Any]:
        response = await self._request("DELETE", f"{self.bot_url}/persistentmenu", headers=await self._headers())
        self._raise_for_status(response, "Persistent menu deletion")
        logger.info("✅ Persistent menu deleted")
        return _json_or_success(response)

    # ============================================
    # Attachments
    # ============================================
    async def download_content(self, file_id: str) -> bytes:
        """
        Download an attachment sent to the bot.

        The attachments endpoint does not return the file itself: it answers
        302 with the real file URL in the Location header.
        """
        logger.info(f"Downloading attachment: {file_id}")
        url = f"{self.bot_url}/attachments/{file_id}"
        redirect = await self._request("GET", url, headers=await self._headers(json_body=False))

        if redirect.status_code != 302:
            logger.error(f"Attachment redirect expected, got {redirect.status_code}: {redirect.text[:300]}")
            raise UpstreamError(SERVICE_NAME, redirect.status_code, redirect.text)

        location = redirect.headers.get("location")
        if not location:
            raise UpstreamError(SERVICE_NAME, redirect.status_code, message="Attachment redirect had no Location header")

        logger.info(f"Attachment location: {location[:100]}...")
        response = await self._request("GET", location)
        self._raise_for_status(response, "Attachment download")
        logger.info(f"Attachment downloaded: {len(response.content)} bytes")
        return response.content

    async def aclose(self) -> None:
        await self._client.aclose()
