"""Twilio SMS client for phone verification codes.

Sends go through the ``twilio`` circuit breaker.  Transient provider
outages (throttling, gateway errors, connection failures) raise and count
against the breaker; permanent rejections such as an invalid number come
back as an unsuccessful ``SmsResult`` instead.
"""

from __future__ import annotations

import logging
import re
import secrets
import time

import httpx

from src.core.config import Settings
from src.core.errors import BackendUnavailableError, OperationTimeoutError
from src.models.schemas import SmsResult
from src.resilience.circuit_breaker import CircuitBreakerRegistry

logger = logging.getLogger(__name__)

SERVICE_NAME = "twilio"

BREAKER_CONFIG = {"timeout_ms": 10000, "error_threshold": 3}

# Provider statuses treated as outages rather than rejections
_RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})


def format_phone_number(phone: str) -> str:
    """Normalize *phone* to E.164, assuming a US number when no country code is given."""
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 11 and digits.startswith("1"):
        return "+" + digits
    if len(digits) == 10:
        return "+1" + digits
    return "+" + digits


def generate_verification_code() -> str:
    """Return a random 6-digit verification code."""
    return str(100000 + secrets.randbelow(900000))


class TwilioClient:
    """SMS sender guarded by a circuit breaker.

    Args:
        settings: Twilio credentials and sender number.
        registry: Shared breaker registry.
        client:   Optional pre-built ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        settings: Settings,
        registry: CircuitBreakerRegistry,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._account_sid = settings.TWILIO_ACCOUNT_SID
        self._auth_token = settings.TWILIO_AUTH_TOKEN
        self._from_number = settings.TWILIO_PHONE_NUMBER
        self._breaker = registry.get_or_create(SERVICE_NAME, BREAKER_CONFIG)
        self._client = client or httpx.AsyncClient(base_url=settings.TWILIO_BASE_URL)

    @property
    def is_configured(self) -> bool:
        return bool(self._account_sid and self._auth_token and self._from_number)

    async def send_sms(self, to: str, body: str) -> SmsResult:
        """Send *body* to *to*.

        When credentials are missing the message is only logged (development
        mode) and the breaker is not involved.
        """
        if not self.is_configured:
            logger.warning("Twilio not configured, SMS to %s not sent", to)
            logger.info("SMS body: %s", body)
            return SmsResult(success=True, message_id=f"dev-mode-{int(time.time() * 1000)}")

        async def _send() -> SmsResult:
            timeout_ms = self._breaker.config.timeout_ms
            try:
                response = await self._client.post(
                    f"/2010-04-01/Accounts/{self._account_sid}/Messages.json",
                    data={"To": to, "From": self._from_number, "Body": body},
                    auth=(self._account_sid, self._auth_token),
                    timeout=timeout_ms / 1000,
                )
            except httpx.TimeoutException:
                raise OperationTimeoutError(SERVICE_NAME, timeout_ms) from None
            except httpx.TransportError as exc:
                raise BackendUnavailableError(SERVICE_NAME, str(exc) or "Connection failed") from exc

            if response.status_code in _RETRYABLE_STATUS_CODES:
                raise BackendUnavailableError(SERVICE_NAME, f"HTTP {response.status_code}")
            if response.status_code >= 400:
                logger.error("SMS send failed (HTTP %d): %s", response.status_code, response.text[:200])
                return SmsResult(success=False, error="Failed to send SMS")

            return SmsResult(success=True, message_id=response.json().get("sid"))

        return await self._breaker.execute(_send)

    async def close(self) -> None:
        await self._client.aclose()
