"""
SMS gateway client (Eskiz-compatible API).

The gateway issues a bearer token on login. The token lives in an SmsTokenCache with an
explicit expiry; a 401 from the gateway drops the cached token and the send is retried once.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from educrm.core.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class SmsResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class SmsTokenCache:
    """Holds the gateway bearer token until it expires or is invalidated."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def is_valid(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at

    def store(self, token: str) -> None:
        self._token = token
        self._expires_at = self._clock() + self._ttl

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    async def get(self, fetch: Callable[[], Awaitable[Optional[str]]]) -> Optional[str]:
        """Return the cached token, calling ``fetch`` to log in when it is missing or expired."""
        if self.is_valid():
            return self._token
        async with self._lock:
            # Another coroutine may have refreshed while we waited
            if self.is_valid():
                return self._token
            token = await fetch()
            if token:
                self.store(token)
            return token


class SmsClient:
    def __init__(
        self,
        settings: Settings,
        token_cache: Optional[SmsTokenCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        self._token_cache = token_cache or SmsTokenCache(settings.sms_token_ttl_seconds)
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._settings.sms_email and self._settings.sms_password)

    async def _login(self, client: httpx.AsyncClient) -> Optional[str]:
        try:
            response = await client.post(
                f"{self._settings.sms_api_url}/auth/login",
                json={"email": self._settings.sms_email, "password": self._settings.sms_password},
            )
            response.raise_for_status()
            token = response.json()["data"]["token"]
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.error("Error getting SMS token: %s", e)
            return None
        logger.info("SMS token obtained successfully")
        return token

    async def send(self, phone: Optional[str], message: str) -> SmsResult:
        """Send one SMS. Transport and gateway errors are reported in the result, never raised."""
        if not self.configured:
            logger.warning("SMS service not configured, skipping SMS send")
            return SmsResult(success=False, error="SMS service not configured")

        clean_phone = re.sub(r"\D", "", phone or "")
        if not clean_phone:
            return SmsResult(success=False, error="Phone number missing")

        async with httpx.AsyncClient(
            timeout=self._settings.sms_timeout_seconds, transport=self._transport
        ) as client:
            for attempt in range(2):
                token = await self._token_cache.get(lambda: self._login(client))
                if not token:
                    logger.warning("SMS token unavailable, skipping SMS")
                    return SmsResult(success=False, error="SMS token unavailable")

                try:
                    response = await client.post(
                        f"{self._settings.sms_api_url}/message/sms/send",
                        json={"mobile_phone": clean_phone, "message": message, "from": self._settings.sms_sender},
                        headers={"Authorization": f"Bearer {token}"},
                    )
                except httpx.HTTPError as e:
                    logger.error("Error sending SMS: %s", e)
                    return SmsResult(success=False, error=str(e))

                if response.status_code == httpx.codes.UNAUTHORIZED and attempt == 0:
                    logger.info("SMS token rejected, refreshing")
                    self._token_cache.invalidate()
                    continue
                if response.is_error:
                    logger.error("Error sending SMS: gateway returned %s", response.status_code)
                    return SmsResult(success=False, error=f"Gateway returned {response.status_code}")

                try:
                    body = response.json()
                except ValueError:
                    body = {}
                logger.info("SMS sent to %s", clean_phone)
                message_id = body.get("id") if isinstance(body, dict) else None
                return SmsResult(success=True, message_id=str(message_id) if message_id is not None else None)

        return SmsResult(success=False, error="SMS token rejected")
