"""
Input Validation Module
=======================
Centralized checks for everything that arrives from outside:
- webhook payload shape
- downloaded image buffers
- location coordinates that look hand-picked rather than GPS fixes

Every validator here returns a value instead of raising, so callers
decide whether a failure is fatal.
"""
import logging
from decimal import Decimal
from typing import Any, Optional, Tuple

from app.utils import parse_timestamp

logger = logging.getLogger(__name__)


# ============================================
# Webhook Payload Validation
# ============================================
# Rules:
# - type, source, content, issuedTime must be present
# - source.userId non-empty, source.domainId numeric (and non-zero)
# - content.type non-empty
# - issuedTime must parse as a timestamp

def validate_webhook_data(data: Any) -> bool:
    """Return True when the payload has everything the router needs."""
    if not isinstance(data, dict):
        logger.warning(f"Webhook payload is not an object: {type(data).__name__}")
        return False

    if not data.get("type") or not data.get("source") or not data.get("content") or not data.get("issuedTime"):
        logger.warning(f"Webhook payload missing required fields: {sorted(data.keys())}")
        return False

    source = data["source"]
    content = data["content"]
    if not isinstance(source, dict) or not isinstance(content, dict):
        logger.warning("Webhook source/content must be objects")
        return False

    if not source.get("userId"):
        logger.warning(f"Webhook source missing userId: {source}")
        return False

    if not _is_numeric_id(source.get("domainId")):
        logger.warning(f"Webhook source has invalid domainId: {source.get('domainId')!r}")
        return False

    if not content.get("type"):
        logger.warning(f"Webhook content missing type: {content}")
        return False

    if parse_timestamp(data["issuedTime"]) is None:
        logger.warning(f"Webhook issuedTime is not a valid timestamp: {data['issuedTime']!r}")
        return False

    return True


def _is_numeric_id(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return value != 0
    if isinstance(value, float):
        return value.is_integer() and value != 0
    if isinstance(value, str):
        value = value.strip()
        return value.isascii() and value.isdigit() and int(value) != 0
    return False


# ============================================
# Image Buffer Validation
# ============================================
# Rules:
# - 1KB <= size <= 10MB
# - leading bytes must match JPEG / PNG / GIF / WEBP / BMP

MIN_IMAGE_BYTES = 1024
MAX_IMAGE_BYTES = 10 * 1024 * 1024

IMAGE_SIGNATURES = (
    (b"\xff\xd8\xff", "jpeg"),
    (b"\x89PNG", "png"),
    (b"GIF8", "gif"),
    (b"RIFF", "webp"),
    (b"BM", "bmp"),
)


def detect_image_format(buffer: bytes) -> Optional[str]:
    for signature, name in IMAGE_SIGNATURES:
        if buffer.startswith(signature):
            return name
    return None


def validate_image_buffer(buffer: bytes) -> Tuple[bool, str]:
    """
    Validate a downloaded image before any decoding or upload.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not buffer:
        return False, "Image is empty"

    size = len(buffer)
    if size < MIN_IMAGE_BYTES:
        logger.warning(f"Image too small: {size} bytes")
        return False, f"Image too small ({size} bytes)"

    if size > MAX_IMAGE_BYTES:
        logger.warning(f"Image too large: {size} bytes")
        return False, f"Image too large ({size} bytes)"

    if detect_image_format(buffer) is None:
        logger.warning(f"Unsupported image signature: {buffer[:10].hex()}")
        return False, "Unsupported image format"

    return True, ""


# ============================================
# Location Plausibility
# ============================================
# A GPS fix carries many decimal digits. Integer coordinates or ones with
# two decimals or fewer usually mean a pin was dropped by hand.

def _decimal_places(value: float) -> int:
    exponent = Decimal(repr(float(value))).normalize().as_tuple().exponent
    return max(0, -exponent) if isinstance(exponent, int) else 0


def is_suspicious_coordinate(latitude: Optional[float], longitude: Optional[float]) -> bool:
    if not latitude or not longitude:
        return False
    for value in (latitude, longitude):
        if float(value).is_integer() or _decimal_places(value) <= 2:
            return True
    return False
