from datetime import datetime, timezone
from typing import Optional

import httpx

from otpgate.services.sms import AuthkeySMSService, SmsResult


def as_utc(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class FakeSMS:
    """Stands in for AuthkeySMSService at the service layer."""

    def __init__(self, result: Optional[SmsResult] = None, exc: Optional[Exception] = None):
        self.result = result or SmsResult(status="success")
        self.exc = exc
        self.calls: list[tuple[str, str]] = []

    async def send_otp(self, *, phone: str, code: str) -> SmsResult:
        self.calls.append((phone, code))
        if self.exc is not None:
            raise self.exc
        return self.result


def authkey_service(handler) -> AuthkeySMSService:
    """Real Authkey client wired to an in-process httpx handler."""
    return AuthkeySMSService(transport=httpx.MockTransport(handler))


def authkey_ok(_: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"Message": "Message sent successfully"})
