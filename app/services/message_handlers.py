"""
Webhook Message Router
======================
Dispatches one validated WebhookEvent to its handler:

    postback present  -> handle_postback   (check-in / check-out / leave / status)
    text              -> handle_text       (commands, CHECKIN_SIMPLE, ATTENDANCE_STATUS)
    image             -> handle_image      (photo upload)
    location          -> handle_location   (location check-in)
    anything else     -> logged and dropped

Handlers catch their own failures and answer with an apology in chat. Once a
record is written, a failed confirmation is only logged. The router adds a
last catch-all, and a failed apology is only logged, so the webhook request
itself always completes.
"""
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from app.config import Settings
from app.models import (
    ACTION_CHECK_IN,
    ACTION_CHECK_OUT,
    ACTION_IMAGE_UPLOAD,
    ACTION_LOCATION_CHECK_IN,
    METHOD_LOCATION,
    METHOD_MANUAL,
    METHOD_PHOTO,
    METHOD_TEXT,
    ImageContent,
    LocationContent,
    LocationInfo,
    PostbackContent,
    RequestInfo,
    TextContent,
    UserInfo,
    WebhookEvent,
)
from app.services.attendance_service import AttendanceRecorder, load_user_status, today_working_hours
from app.services.image_service import ImagePipeline
from app.services.request_analysis import analyze_request_source
from app.services.works_service import WorksClient, image_message
from app.state_store import CooldownStore
from app.utils import format_local
from app.validators import is_suspicious_coordinate

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Postback tokens / command texts
CHECKIN_ACTION = "CHECKIN_ACTION"
CHECKIN_SIMPLE = "CHECKIN_SIMPLE"
CHECKIN_LOCATION = "CHECKIN_LOCATION"
CHECKOUT_ACTION = "CHECKOUT_ACTION"
ATTENDANCE_STATUS = "ATTENDANCE_STATUS"
LEAVE_PREFIX = "LEAVE:"

CMD_TEST = "/test"
CMD_MENU = "/menu"
CMD_DELETE_MENU = "/delete-menu"
CMD_HELP = "/help"
CMD_STATUS = "/status"

SUSPICIOUS_LOCATION_NOTE = "선택된 위치일 가능성 있음 (정확도 낮은 좌표)"

MSG_CHECKIN_FAILED = "❌ 출근 처리 중 오류가 발생했습니다.\n다시 시도해주세요."
MSG_CHECKOUT_FAILED = "❌ 퇴근 처리 중 오류가 발생했습니다.\n다시 시도해주세요."
MSG_LEAVE_FAILED = "❌ 근태 등록 중 오류가 발생했습니다.\n다시 시도해주세요."
MSG_IMAGE_MISSING = "❌ 이미지를 처리할 수 없습니다. 다시 시도해주세요."
MSG_IMAGE_FAILED = "❌ 이미지 처리 중 오류가 발생했습니다.\n다시 시도해주세요."
MSG_LOCATION_FAILED = "❌ 위치 정보 처리 중 오류가 발생했습니다.\n다시 시도해주세요."
MSG_STATUS_FAILED = "❌ 출근 현황을 조회하는 중 오류가 발생했습니다."
MSG_ROUTER_FAILED = "❌ 메시지 처리 중 오류가 발생했습니다.\n잠시 후 다시 시도해주세요."
MSG_SAVED = "구글 시트에 기록되었습니다! ✅"
MSG_SAVED_DB = "출근 기록이 저장되었습니다! ✅"

HELP_TEXT = (
    "🤖 네이버웍스 출근 봇 도움말\n\n"
    "📝 사용 가능한 명령어:\n"
    "• /test - 연결 테스트\n"
    "• /menu - 위치 기반 출근 버튼 등록\n"
    "• /delete-menu - 출근 버튼 삭제\n"
    "• /status - 오늘 출근 현황과 이번 달 통계\n"
    "• /help - 도움말 보기\n\n"
    "📍 위치 기반 출근:\n"
    "• '출근하기' 버튼을 누르면 위치 정보를 요청합니다\n"
    "• 위치 정보와 함께 출근이 기록되어 관리자가 확인할 수 있습니다\n"
    "• 재택근무와 사무실 근무를 구분할 수 있습니다\n\n"
    "📸 이미지 업로드:\n"
    "• 채팅창에 이미지를 업로드하면 자동으로 압축하여 저장됩니다\n"
    "• 이미지 링크가 제공되어 언제든지 확인할 수 있습니다\n\n"
    "📊 기록 관리:\n"
    "• 모든 출근 기록은 자동으로 저장됩니다\n"
    "• 위치 정보, IP 주소, 시간 등이 함께 기록됩니다\n\n"
    "문의사항이 있으시면 관리자에게 문의해주세요! 😊"
)

LOCATION_PROMPT = (
    "📍 위치 정보와 함께 출근을 기록하시겠습니까?\n\n"
    "⚠️ 주의: 정확한 현재 위치를 선택해주세요.\n"
    "임의 위치 선택 시 관리자가 확인할 수 있습니다."
)

LOCATION_QUICK_REPLY = {
    "items": [
        {"action": {"type": "location", "label": "📍 실제 현재 위치로 출근하기"}},
        {"action": {"type": "message", "label": "🏢 위치 없이 출근하기", "text": CHECKIN_SIMPLE}},
    ]
}


def cooldown_message(remaining_seconds: int) -> str:
    return f"⏰ 잠시 후 다시 눌러주세요.\n{remaining_seconds}초 후에 다시 시도할 수 있습니다."


def map_links(latitude: float, longitude: float) -> str:
    return (
        "🗺️ 지도에서 확인하기:\n\n"
        f"📍 구글 지도: https://maps.google.com/?q={latitude},{longitude}\n"
        f"🧭 네이버 지도: https://map.naver.com/v5/search/{latitude},{longitude}\n\n"
        f"📋 좌표: {latitude}, {longitude}"
    )


class MessageRouter:
    """Routes webhook events to handlers. One instance serves the whole app."""

    def __init__(
        self,
        client: WorksClient,
        recorder: AttendanceRecorder,
        cooldowns: CooldownStore,
        images: ImagePipeline,
        settings: Settings,
    ):
        self.client = client
        self.recorder = recorder
        self.cooldowns = cooldowns
        self.images = images
        self.settings = settings

    # ============================================
    # Helpers
    # ============================================
    @property
    def saved_line(self) -> str:
        return MSG_SAVED if self.recorder.backend.name == "sheets" else MSG_SAVED_DB

    def _local_time(self, event: WebhookEvent) -> str:
        return format_local(event.issuedTime, self.settings.TIMEZONE)

    async def _reply(self, event: WebhookEvent, text: str, **kwargs) -> None:
        await self.client.send_text(event.user_id, text, event.channel_id, **kwargs)

    async def _apologize(self, event: WebhookEvent, text: str) -> None:
        try:
            await self._reply(event, text)
        except Exception as e:
            logger.error(f"Failed to send error message to {event.user_id}: {e}")

    async def _guarded(self, event: WebhookEvent, failure_text: str, action: Callable[[], Awaitable[T]]) -> Optional[T]:
        """Run the recording step; on failure apologize and return None."""
        try:
            return await action()
        except Exception as e:
            logger.error(f"❌ Handler failed for {event.user_id}: {type(e).__name__}: {e}")
            await self._apologize(event, failure_text)
            return None

    async def _confirm(self, event: WebhookEvent, *texts: str) -> bool:
        try:
            for text in texts:
                await self._reply(event, text)
        except Exception as e:
            logger.error(f"Recorded for {event.user_id} but confirmation failed: {e}")
            return False
        return True

    # ============================================
    # Router
    # ============================================
    async def route(self, event: WebhookEvent, request_info: Optional[RequestInfo] = None) -> None:
        if event.type != "message":
            logger.info(f"Ignoring non-message event: {event.type}")
            return

        content = event.content
        try:
            if isinstance(content, PostbackContent):
                await self.handle_postback(event, request_info)
            elif isinstance(content, TextContent):
                if content.text:
                    await self.handle_text(event, request_info)
            elif isinstance(content, ImageContent):
                await self.handle_image(event, request_info)
            elif isinstance(content, LocationContent):
                await self.handle_location(event, request_info)
            else:
                logger.info(f"Unsupported content type: {content.type}")
        except Exception as e:
            logger.error(f"Message routing error: {e}")
            await self._apologize(event, MSG_ROUTER_FAILED)

    # ============================================
    # Text
    # ============================================
    async def handle_text(self, event: WebhookEvent, request_info: Optional[RequestInfo] = None) -> None:
        text = (event.content.text or "").strip()
        logger.info(f"Text message: {text}")

        if text == CMD_TEST:
            await self._reply(event, "Hello, World!")
        elif text == CMD_MENU:
            await self._menu_command(event, register=True)
        elif text == CMD_DELETE_MENU:
            await self._menu_command(event, register=False)
        elif text == CMD_HELP:
            await self._reply(event, HELP_TEXT)
        elif text == CHECKIN_LOCATION:
            await self._reply(event, LOCATION_PROMPT, quick_reply=LOCATION_QUICK_REPLY)
        elif text == CHECKIN_SIMPLE:
            await self.check_in(event, request_info, method=METHOD_TEXT)
        elif text in (CMD_STATUS, ATTENDANCE_STATUS):
            await self.report_status(event)
        else:
            logger.info(f"Unhandled text message: {text}")

    async def _menu_command(self, event: WebhookEvent, register: bool) -> None:
        try:
            if register:
                await self.client.create_persistent_menu()
                text = "✅ 출근하기 버튼이 등록되었습니다!\n이제 하단에 '출근하기' 버튼을 사용할 수 있습니다."
            else:
                await self.client.delete_persistent_menu()
                text = "✅ 출근하기 버튼이 삭제되었습니다!\n메뉴를 다시 등록하려면 /menu 명령어를 사용하세요."
        except Exception as e:
            logger.error(f"Persistent menu {'registration' if register else 'deletion'} failed: {e}")
            verb = "등록" if register else "삭제"
            await self._apologize(event, f"❌ 메뉴 {verb} 중 오류가 발생했습니다. 다시 시도해주세요.")
            return
        await self._reply(event, text)

    # ============================================
    # Postback
    # ============================================
    async def handle_postback(self, event: WebhookEvent, request_info: Optional[RequestInfo] = None) -> None:
        postback = event.content.postback
        logger.info(f"Postback: {postback}")

        if postback in (CHECKIN_ACTION, CHECKIN_SIMPLE):
            await self.check_in(event, request_info, method=METHOD_MANUAL)
        elif postback == CHECKOUT_ACTION:
            await self.check_out(event, request_info)
        elif postback.startswith(LEAVE_PREFIX):
            await self.report_leave(event, postback[len(LEAVE_PREFIX):].strip(), request_info)
        elif postback == ATTENDANCE_STATUS:
            await self.report_status(event)
        else:
            logger.info(f"Unhandled postback: {postback}")

    async def check_in(self, event: WebhookEvent, request_info: Optional[RequestInfo], method: str) -> None:
        user_id = event.user_id
        gate = await self.cooldowns.try_acquire(user_id)
        if gate.suppressed:
            await self._reply(event, cooldown_message(gate.remaining_seconds))
            return

        try:
            user_info = await self.client.get_user_info(user_id)
            recorded = await self.recorder.record(
                user_id=user_id,
                domain_id=event.source.domainId,
                action=ACTION_CHECK_IN,
                timestamp=event.issuedTime,
                method=method,
                user_info=user_info,
                request_info=request_info,
            )
        except Exception as e:
            logger.error(f"❌ Check-in failed for {user_id}: {e}")
            await self.cooldowns.release(user_id, gate.previous)
            await self._apologize(event, MSG_CHECKIN_FAILED)
            return

        await self._confirm(event, self._checkin_text(event, user_info, request_info, recorded.is_late, recorded.minutes_late))

    def _checkin_text(
        self,
        event: WebhookEvent,
        user_info: UserInfo,
        request_info: Optional[RequestInfo],
        is_late: bool,
        minutes_late: int,
    ) -> str:
        text = (
            "🟢 출근이 완료되었습니다!\n\n📊 출근 정보:\n"
            f"• 시간: {self._local_time(event)}\n"
            f"• 이름: {user_info.name}\n"
            f"• 이메일: {user_info.email}\n"
            f"• 부서: {user_info.department}"
        )

        analysis = analyze_request_source(request_info, self.settings.HOME_COUNTRY) if request_info else None
        if analysis and analysis.is_foreign:
            text += f"\n• 접속 지역: {analysis.location_info}"

        if is_late:
            text += f"\n⚠️ 지각 처리되었습니다. ({minutes_late}분)"

        text += f"\n\n{self.saved_line}"
        text += (
            "\n\n📍 다음번에는 '출근하기' 버튼을 눌러 위치 정보와 함께 출근해주세요!\n"
            "위치 정보가 있으면 관리자가 출근 위치를 확인할 수 있습니다."
        )

        if analysis and analysis.risk_level == "high":
            text += "\n\n🚨 해외 접속이 감지되었습니다. 관리자와 상의해주세요."
        elif analysis and analysis.risk_level == "medium":
            text += "\n\n📱 모바일에서 출근하신 경우 관리자와 상의해주세요."
        return text

    async def check_out(self, event: WebhookEvent, request_info: Optional[RequestInfo] = None) -> None:
        async def run() -> UserInfo:
            user_info = await self.client.get_user_info(event.user_id)
            await self.recorder.record(
                user_id=event.user_id,
                domain_id=event.source.domainId,
                action=ACTION_CHECK_OUT,
                timestamp=event.issuedTime,
                method=METHOD_MANUAL,
                user_info=user_info,
                request_info=request_info,
            )
            return user_info

        user_info = await self._guarded(event, MSG_CHECKOUT_FAILED, run)
        if user_info is None:
            return

        text = f"🔴 퇴근 처리가 완료되었습니다!\n퇴근 시간: {self._local_time(event)}\n"
        try:
            hours = await today_working_hours(
                self.recorder.backend, event.user_id, event.issuedTime, self.settings.TIMEZONE
            )
            text += f"오늘 근무시간: {hours:g}시간\n"
        except Exception as e:
            logger.warning(f"Working hours lookup failed for {event.user_id}: {e}")
        text += f"• 이름: {user_info.name}\n\n오늘도 수고하셨습니다! 👏"
        await self._confirm(event, text)

    async def report_status(self, event: WebhookEvent) -> None:
        tz_name = self.settings.TIMEZONE
        status = await self._guarded(
            event,
            MSG_STATUS_FAILED,
            lambda: load_user_status(self.recorder.backend, event.user_id, event.issuedTime, tz_name),
        )
        if status is None:
            return

        if status.first_checkin is not None:
            today = f"✅ {format_local(status.first_checkin, tz_name, '%H:%M')} 출근"
        else:
            today = "⏰ 미출근"
        await self._confirm(
            event,
            "📊 출근 현황\n\n"
            f"📅 오늘: {today}\n"
            f"⏰ 근무시간: {status.working_hours:g}시간\n\n"
            "📈 이번 달 통계:\n"
            f"• 출근: {status.checkin_count}일\n"
            f"• 퇴근: {status.checkout_count}일\n"
            f"• 지각: {status.late_count}일",
        )

    async def report_leave(self, event: WebhookEvent, label: str, request_info: Optional[RequestInfo] = None) -> None:
        if not self.recorder.policy.is_exempt(label):
            allowed = ", ".join(sorted(self.recorder.policy.exempt_actions))
            await self._reply(event, f"❓ 알 수 없는 근태 유형입니다: {label}\n사용 가능: {allowed}")
            return

        async def run() -> UserInfo:
            user_info = await self.client.get_user_info(event.user_id)
            await self.recorder.record(
                user_id=event.user_id,
                domain_id=event.source.domainId,
                action=label,
                timestamp=event.issuedTime,
                method=METHOD_MANUAL,
                user_info=user_info,
                request_info=request_info,
            )
            return user_info

        user_info = await self._guarded(event, MSG_LEAVE_FAILED, run)
        if user_info is None:
            return
        await self._confirm(
            event,
            f"🗓️ {label} 등록이 완료되었습니다!\n"
            f"• 시간: {self._local_time(event)}\n"
            f"• 이름: {user_info.name}\n\n"
            f"{self.saved_line}",
        )

    # ============================================
    # Image
    # ============================================
    async def handle_image(self, event: WebhookEvent, request_info: Optional[RequestInfo] = None) -> None:
        file_id = event.content.fileId
        if not file_id:
            logger.error("Image message without fileId")
            await self._apologize(event, MSG_IMAGE_MISSING)
            return

        async def run():
            logger.info(f"Image message: {file_id}")
            buffer = await self.client.download_content(file_id)
            processed = await self.images.process(buffer, event.user_id)
            user_info = await self.client.get_user_info(event.user_id)
            await self.recorder.record(
                user_id=event.user_id,
                domain_id=event.source.domainId,
                action=ACTION_IMAGE_UPLOAD,
                timestamp=event.issuedTime,
                method=METHOD_PHOTO,
                user_info=user_info,
                image_url=processed.url,
                request_info=request_info,
            )
            return processed, user_info

        result = await self._guarded(event, MSG_IMAGE_FAILED, run)
        if result is None:
            return

        processed, user_info = result
        meta = processed.metadata
        confirmed = await self._confirm(
            event,
            "📸 이미지가 성공적으로 업로드되었습니다!\n\n"
            "👤 업로드 정보:\n"
            f"• 시간: {self._local_time(event)}\n"
            f"• 이름: {user_info.name}\n"
            f"• 부서: {user_info.department}\n\n"
            "📊 이미지 정보:\n"
            f"• 크기: {meta.width}x{meta.height}\n"
            f"• 형식: {meta.format.upper()}\n"
            f"• 파일 크기: {meta.size_kb}KB\n\n"
            f"🔗 이미지 링크: {processed.url}\n\n"
            f"{self.saved_line}",
            f"📷 업로드된 이미지 ({meta.width}x{meta.height}, {meta.size_kb}KB)\n\n"
            f"🖼️ 이미지 보기/다운로드:\n{processed.url}",
        )
        if not confirmed:
            return
        try:
            await self.client.send_message(
                event.user_id,
                image_message(processed.url, f"업로드된 이미지 ({user_info.name})"),
                event.channel_id,
            )
        except Exception as e:
            logger.warning(f"Image preview send failed: {e}")

    # ============================================
    # Location
    # ============================================
    async def handle_location(self, event: WebhookEvent, request_info: Optional[RequestInfo] = None) -> None:
        content = event.content
        latitude, longitude = content.latitude, content.longitude
        logger.info(f"Location message: {content.address} ({latitude}, {longitude})")

        suspicious = is_suspicious_coordinate(latitude, longitude)

        async def run():
            location = LocationInfo(
                address=content.address,
                latitude=latitude,
                longitude=longitude,
                verified=not suspicious,
                notes=SUSPICIOUS_LOCATION_NOTE if suspicious else "",
            )
            user_info = await self.client.get_user_info(event.user_id)
            recorded = await self.recorder.record(
                user_id=event.user_id,
                domain_id=event.source.domainId,
                action=ACTION_LOCATION_CHECK_IN,
                timestamp=event.issuedTime,
                method=METHOD_LOCATION,
                user_info=user_info,
                location=location,
                request_info=request_info,
            )
            return user_info, recorded

        result = await self._guarded(event, MSG_LOCATION_FAILED, run)
        if result is None:
            return

        user_info, recorded = result
        text = (
            "🟢 출근이 완료되었습니다!\n\n📊 출근 정보:\n"
            f"• 시간: {self._local_time(event)}\n"
            f"• 이름: {user_info.name}\n"
            f"• 이메일: {user_info.email}\n"
            f"• 부서: {user_info.department}"
        )
        if content.address:
            text += f"\n• 출근 위치: {content.address}"
        if latitude and longitude:
            text += f"\n• 좌표: {latitude:.6f}, {longitude:.6f}"
        if recorded.is_late:
            text += f"\n⚠️ 지각 처리되었습니다. ({recorded.minutes_late}분)"
        text += f"\n\n{self.saved_line}"
        if suspicious:
            text += "\n\n⚠️ 관리자 확인: 선택된 위치일 가능성이 있습니다."

        texts = [text]
        if latitude and longitude:
            texts.append(map_links(latitude, longitude))
        await self._confirm(event, *texts)
