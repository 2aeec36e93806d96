from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..observability.metrics import OTP_ISSUED, OTP_SMS
from ..repos import otp_verifications as otp_repo
from .errors import MissingFields, StoreError
from .sms import AuthkeySMSService, SmsResult, mask_phone

logger = logging.getLogger(__name__)

OTP_MIN = 100000
OTP_MAX = 999999


@dataclass(frozen=True)
class IssueResult:
    code: str
    sms_status: str
    sms_error: Optional[str]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def generate_code() -> str:
    # uniform over [100000, 999999]
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


async def issue_otp(
    db: AsyncSession,
    *,
    phone: Optional[str],
    email: Optional[str],
    name: Optional[str],
    sms: AuthkeySMSService,
) -> IssueResult:
    """
    Store a new OTP for (phone, email) and try to text it.

    The stored record is the postcondition; SMS delivery is best-effort and its
    outcome is only reported back in the result.
    """
    if not all(v and v.strip() for v in (phone, email, name)):
        raise MissingFields("Missing required fields")

    S = get_settings()
    now = _now_utc()
    code = generate_code()
    expires_at = now + timedelta(minutes=S.OTP_TTL_MINUTES)

    try:
        await otp_repo.create(
            db, phone=phone, email=email, otp_code=code, expires_at=expires_at, created_at=now
        )
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Error inserting OTP for %s", mask_phone(phone))
        raise StoreError("Failed to generate OTP")
    OTP_ISSUED.inc()

    try:
        result = await sms.send_otp(phone=phone, code=code)
    except Exception as exc:
        logger.exception("SMS delivery raised for %s", mask_phone(phone))
        result = SmsResult(status="failed", error=str(exc) or exc.__class__.__name__)
    OTP_SMS.labels(status=result.status).inc()
    logger.info("OTP issued for %s (sms_status=%s)", mask_phone(phone), result.status)

    return IssueResult(code=code, sms_status=result.status, sms_error=result.error)
