from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

import httpx

from ..config import get_settings

logger = logging.getLogger(__name__)

AUTHKEY_OK_MESSAGE = "Message sent successfully"


@dataclass(frozen=True)
class SmsResult:
    status: str  # 'success' | 'failed'
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


def normalize_phone(phone: str, country_code: str) -> str:
    """Digits only, with a leading country code dropped from a full international number."""
    # Authkey gets country_code as its own query param and prepends it to
    # `mobile`, so a mobile that still carries it would be dialled as 9191...
    digits = re.sub(r"\D", "", phone)
    if country_code and digits.startswith(country_code) and len(digits) == len(country_code) + 10:
        return digits[len(country_code):]
    return digits


def mask_phone(phone: str) -> str:
    digits = re.sub(r"\D", "", phone)
    return f"***{digits[-4:]}" if len(digits) > 4 else "***"


class AuthkeySMSService:
    """Authkey.io OTP sender. send_otp never raises; failures come back as SmsResult."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        settings = get_settings()
        self._api_key = settings.AUTHKEY_API_KEY
        self._base_url = settings.AUTHKEY_BASE_URL
        self._sender_id = settings.AUTHKEY_SENDER_ID
        self._country_code = settings.AUTHKEY_COUNTRY_CODE
        self._timeout = settings.SMS_TIMEOUT_SEC
        self._transport = transport

    async def send_otp(self, *, phone: str, code: str) -> SmsResult:
        mobile = normalize_phone(phone, self._country_code)
        params = {
            "authkey": self._api_key,
            "mobile": mobile,
            "country_code": self._country_code,
            "sid": self._sender_id,
            "otp": code,
        }
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                resp = await client.get(self._base_url, params=params)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Authkey SMS send failed for %s: %s", mask_phone(phone), exc)
            return SmsResult(status="failed", error=str(exc) or exc.__class__.__name__)

        message = data.get("Message") if isinstance(data, dict) else None
        if resp.is_success and message == AUTHKEY_OK_MESSAGE:
            logger.info("OTP SMS sent to %s", mask_phone(phone))
            return SmsResult(status="success")

        logger.warning("Authkey API error for %s: status=%s body=%s", mask_phone(phone), resp.status_code, data)
        return SmsResult(status="failed", error=message or "Failed to send SMS")


sms_service: Optional[AuthkeySMSService] = None


def get_sms_service() -> AuthkeySMSService:
    global sms_service
    if sms_service is None:
        sms_service = AuthkeySMSService()
    return sms_service
