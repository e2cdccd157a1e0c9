"""
Request Authentication
======================
- Webhook signature: NAVER WORKS signs the raw request body with
  HMAC-SHA256 keyed by the bot secret and sends the base64 digest in the
  X-WORKS-Signature header.
- Admin token: optional shared token guarding the admin, weekly summary
  and scheduler endpoints (used by cron jobs and the dashboard).
"""
import base64
import hashlib
import hmac
import logging
from typing import Optional, Union

from fastapi import Depends, Header, HTTPException, status

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-WORKS-Signature"


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def sign_body(body: Union[str, bytes], secret: str) -> str:
    """Compute the base64 HMAC-SHA256 signature for a webhook body."""
    digest = hmac.new(_to_bytes(secret), _to_bytes(body), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(body: Union[str, bytes], signature: Optional[str], secret: str) -> bool:
    """
    Check a webhook signature in constant time.
    Never raises: malformed input simply fails verification.
    """
    try:
        if not signature or not secret:
            return False
        expected = sign_body(body, secret)
        return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8"))
    except Exception as e:
        logger.error(f"Signature verification error: {e}")
        return False


def require_admin_token(
    authorization: Optional[str] = Header(None),
    x_admin_token: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Reject the request unless it carries ADMIN_API_TOKEN (when configured)."""
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        return

    supplied = x_admin_token or ""
    if not supplied and authorization and authorization.lower().startswith("bearer "):
        supplied = authorization[7:].strip()

    if not supplied or not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected admin request with missing or invalid token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
