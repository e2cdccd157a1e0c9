"""
Webhook Route - NAVER WORKS bot callback
POST /api/webhook

signature check -> JSON parse -> payload validation -> MessageRouter

Responses:
- 200 {"success": true}  accepted (handler failures are reported in chat)
- 401 bad or missing X-WORKS-Signature
- 400 malformed JSON or invalid payload
- 500 bot secret not configured, or an unexpected error
"""
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.auth import SIGNATURE_HEADER, verify_signature
from app.config import Settings, get_settings
from app.dependencies import get_message_router
from app.models import WebhookEvent
from app.services.message_handlers import MessageRouter
from app.services.request_analysis import extract_request_info
from app.validators import validate_webhook_data

router = APIRouter(tags=["webhook"])
logger = logging.getLogger(__name__)


def _reject(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


def log_webhook_event(event: WebhookEvent) -> None:
    content = event.content
    logger.info("=== Webhook event received ===")
    logger.info(
        f"type={event.type} user={event.user_id} channel={event.channel_id or '-'} "
        f"domain={event.source.domainId} content={content.type} time={event.issuedTime.isoformat()}"
    )
    for attr in ("text", "postback", "fileId"):
        value = getattr(content, attr, None)
        if value:
            logger.info(f"- {attr}: {value}")


@router.post("/api/webhook")
async def receive_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    message_router: MessageRouter = Depends(get_message_router),
):
    body = await request.body()

    if not settings.WORKS_BOT_SECRET:
        logger.error("NAVER_WORKS_BOT_SECRET not configured; cannot verify webhook")
        return _reject(500, "Bot secret not configured")

    if not verify_signature(body, request.headers.get(SIGNATURE_HEADER), settings.WORKS_BOT_SECRET):
        logger.warning("Rejected webhook with invalid signature")
        return _reject(401, "Invalid signature")

    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning(f"Webhook body is not valid JSON: {e}")
        return _reject(400, "Invalid JSON")

    if not validate_webhook_data(data):
        return _reject(400, "Invalid webhook data")

    try:
        event = WebhookEvent.from_payload(data)
    except (ValidationError, ValueError, TypeError) as e:
        logger.warning(f"Webhook payload could not be parsed: {e}")
        return _reject(400, "Invalid webhook data")

    log_webhook_event(event)
    request_info = extract_request_info(request.headers)
    await message_router.route(event, request_info)

    return {"success": True}
