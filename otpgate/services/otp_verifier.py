from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..models import User
from ..observability.metrics import OTP_VERIFY, USERS_PROVISIONED
from ..repos import otp_verifications as otp_repo
from ..repos import users as users_repo
from .errors import AttemptsExceeded, MissingFields, OtpExpired, OtpMismatch, OtpNotFound, StoreError
from .sms import mask_phone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifyResult:
    user: User
    created: bool

    @property
    def message(self) -> str:
        return "User created successfully" if self.created else "User already exists"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _codes_match(stored: str, submitted: str) -> bool:
    return hmac.compare_digest(stored.encode("utf-8"), submitted.encode("utf-8"))


async def _resolve_user(db: AsyncSession, *, email: str, phone: str, name: str) -> tuple[User, bool]:
    """Return (user, created). Reuses any user matching email OR phone."""
    existing = await users_repo.get_by_email_or_phone(db, email=email, phone=phone)
    if existing is not None:
        return existing, False

    try:
        async with db.begin_nested():
            user = await users_repo.create_verified(db, email=email, phone=phone, name=name)
    except IntegrityError:
        # lost a race with a concurrent verification of the same identity
        existing = await users_repo.get_by_email_or_phone(db, email=email, phone=phone)
        if existing is None:
            logger.exception("Error creating user for %s", mask_phone(phone))
            raise StoreError("Failed to create user")
        return existing, False
    except SQLAlchemyError:
        logger.exception("Error creating user for %s", mask_phone(phone))
        raise StoreError("Failed to create user")
    return user, True


async def _replay(
    db: AsyncSession, *, phone: str, email: str, name: str, otp: str, now: datetime, max_attempts: int
) -> VerifyResult:
    """
    No unused record left. Accept the request only as a repeat of a successful
    verification: the newest record is consumed, unexpired and carries this code.

    Wrong guesses against a consumed record count against the same attempt
    limit as guesses against a live one.
    """
    last = await otp_repo.latest(db, phone=phone, email=email)
    if last is None or not last.is_used or now > _as_utc(last.expires_at):
        OTP_VERIFY.labels(outcome="not_found").inc()
        raise OtpNotFound("No valid OTP found")

    if last.attempts >= max_attempts:
        OTP_VERIFY.labels(outcome="max_attempts").inc()
        raise AttemptsExceeded("Maximum attempts exceeded")

    if not _codes_match(last.otp_code, otp):
        await otp_repo.increment_attempts(db, last.id)
        await db.commit()
        OTP_VERIFY.labels(outcome="not_found").inc()
        raise OtpNotFound("No valid OTP found")

    user, created = await _resolve_user(db, email=email, phone=phone, name=name)
    await db.commit()
    return VerifyResult(user=user, created=created)


async def verify_otp(
    db: AsyncSession,
    *,
    phone: Optional[str],
    email: Optional[str],
    name: Optional[str],
    otp: Optional[str],
) -> VerifyResult:
    """
    Check `otp` against the newest unused record for (phone, email).

    Checks run in a fixed order: expiry, then attempts, then the code itself.
    A mismatch bumps attempts by one; a match consumes the record and resolves
    the user (existing one by email or phone, or a new verified account) in
    the same transaction.
    """
    if not all(v and v.strip() for v in (phone, email, name, otp)):
        OTP_VERIFY.labels(outcome="missing_fields").inc()
        raise MissingFields("Missing required fields")

    S = get_settings()
    now = _now_utc()

    try:
        record = await otp_repo.latest_unused(db, phone=phone, email=email)
        if record is None:
            result = await _replay(
                db, phone=phone, email=email, name=name, otp=otp, now=now, max_attempts=S.OTP_MAX_ATTEMPTS
            )
        else:
            if now > _as_utc(record.expires_at):
                OTP_VERIFY.labels(outcome="expired").inc()
                raise OtpExpired("OTP has expired")

            if record.attempts >= S.OTP_MAX_ATTEMPTS:
                OTP_VERIFY.labels(outcome="max_attempts").inc()
                raise AttemptsExceeded("Maximum attempts exceeded")

            if not _codes_match(record.otp_code, otp):
                await otp_repo.increment_attempts(db, record.id)
                await db.commit()
                OTP_VERIFY.labels(outcome="mismatch").inc()
                raise OtpMismatch("Invalid OTP")

            if await otp_repo.mark_used(db, record.id):
                user, created = await _resolve_user(db, email=email, phone=phone, name=name)
                await db.commit()
                result = VerifyResult(user=user, created=created)
            else:
                # consumed by a concurrent request between our read and update
                await db.rollback()
                result = await _replay(
                    db, phone=phone, email=email, name=name, otp=otp, now=now, max_attempts=S.OTP_MAX_ATTEMPTS
                )
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Error verifying OTP for %s", mask_phone(phone))
        raise StoreError("Failed to verify OTP")

    if result.created:
        USERS_PROVISIONED.inc()
    OTP_VERIFY.labels(outcome="created" if result.created else "existing").inc()
    logger.info("OTP verified for %s (user_id=%s created=%s)", mask_phone(phone), result.user.id, result.created)
    return result
