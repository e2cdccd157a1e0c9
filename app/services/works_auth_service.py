"""
NAVER WORKS Service-Account Authentication
==========================================
Obtains the bot's access token with the OAuth 2.0 JWT-bearer grant:

1. Sign a short-lived assertion (RS256) with the service account's private key
   - iss: client ID, sub: service account, exp: now + 1 hour
2. POST it to the token endpoint together with the client credentials
3. Cache the access token until 60 seconds before it expires

One provider instance is shared by the whole app. Concurrent callers that
find the cache empty wait on a lock, so only one token request is in flight.
"""
import asyncio
import logging
import time
from typing import Callable, Optional

import httpx
import jwt

from app.config import Settings
from app.exceptions import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME_SECONDS = 3600
REFRESH_MARGIN_SECONDS = 60


class WorksTokenProvider:
    """Cached access-token source for NAVER WORKS API calls."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self._clock = clock
        self._client = httpx.AsyncClient(transport=transport, timeout=settings.HTTP_TIMEOUT_SECONDS)
        self._lock = asyncio.Lock()
        self._token: Optional[str] = None
        self._expires_at: float = 0

    def build_assertion(self, now: Optional[int] = None) -> str:
        """Sign the JWT assertion sent to the token endpoint."""
        issued_at = int(self._clock() if now is None else now)
        payload = {
            "iss": self.settings.WORKS_CLIENT_ID,
            "sub": self.settings.WORKS_SERVICE_ACCOUNT,
            "iat": issued_at,
            "exp": issued_at + ASSERTION_LIFETIME_SECONDS,
        }
        return jwt.encode(
            payload,
            self.settings.WORKS_PRIVATE_KEY,
            algorithm="RS256",
            headers={"typ": "JWT"},
        )

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0

    async def get_token(self) -> str:
        if self._token and self._clock() < self._expires_at - REFRESH_MARGIN_SECONDS:
            return self._token

        async with self._lock:
            # Another caller may have refreshed while we waited
            if self._token and self._clock() < self._expires_at - REFRESH_MARGIN_SECONDS:
                return self._token
            return await self._request_token()

    async def _request_token(self) -> str:
        missing = self.settings.works_credentials_missing()
        if missing:
            raise ConfigurationError(f"NAVER WORKS credentials not configured: {', '.join(missing)}")

        try:
            assertion = self.build_assertion()
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise ConfigurationError(f"NAVER_WORKS_PRIVATE_KEY could not sign the assertion: {e}")

        form = {
            "grant_type": JWT_BEARER_GRANT,
            "client_id": self.settings.WORKS_CLIENT_ID,
            "client_secret": self.settings.WORKS_CLIENT_SECRET,
            "assertion": assertion,
            "scope": self.settings.WORKS_SCOPE,
        }

        logger.info("Requesting NAVER WORKS access token...")
        try:
            response = await self._client.post(self.settings.WORKS_TOKEN_URL, data=form)
        except httpx.HTTPError as e:
            raise UpstreamError("naver_works_auth", message=f"Token request failed: {e}")

        if response.status_code < 200 or response.status_code >= 300:
            logger.error(f"❌ Access token request failed: {response.status_code} {response.text[:300]}")
            raise UpstreamError("naver_works_auth", response.status_code, response.text)

        data = response.json()
        token = data.get("access_token")
        if not token:
            raise UpstreamError("naver_works_auth", response.status_code, response.text,
                                message="Token response did not include access_token")

        self._token = token
        self._expires_at = self._clock() + int(data.get("expires_in", ASSERTION_LIFETIME_SECONDS))
        logger.info("✅ NAVER WORKS access token issued")
        return token

    async def aclose(self) -> None:
        await self._client.aclose()
