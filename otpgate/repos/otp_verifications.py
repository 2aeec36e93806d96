from __future__ import annotations
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import OtpVerification


async def create(
    db: AsyncSession,
    *,
    phone: str,
    email: Optional[str],
    otp_code: str,
    expires_at: datetime,
    created_at: datetime,
) -> OtpVerification:
    """Insert a fresh, unused record. Older unused records are left alone."""
    rec = OtpVerification(
        phone=phone,
        email=email,
        otp_code=otp_code,
        expires_at=expires_at,
        is_used=False,
        attempts=0,
        created_at=created_at,
    )
    db.add(rec)
    await db.flush()
    return rec


async def latest_unused(db: AsyncSession, *, phone: str, email: str) -> Optional[OtpVerification]:
    res = await db.execute(
        select(OtpVerification)
        .where(
            OtpVerification.phone == phone,
            OtpVerification.email == email,
            OtpVerification.is_used.is_(False),
        )
        .order_by(OtpVerification.created_at.desc())
        .limit(1)
    )
    return res.scalars().first()


async def latest(db: AsyncSession, *, phone: str, email: str) -> Optional[OtpVerification]:
    res = await db.execute(
        select(OtpVerification)
        .where(OtpVerification.phone == phone, OtpVerification.email == email)
        .order_by(OtpVerification.created_at.desc())
        .limit(1)
    )
    return res.scalars().first()


async def increment_attempts(db: AsyncSession, record_id: uuid.UUID) -> None:
    await db.execute(
        update(OtpVerification)
        .where(OtpVerification.id == record_id)
        .values(attempts=OtpVerification.attempts + 1)
        .execution_options(synchronize_session=False)
    )


async def mark_used(db: AsyncSession, record_id: uuid.UUID) -> bool:
    """Compare-and-swap is_used false -> true. False means someone else consumed it first."""
    res = await db.execute(
        update(OtpVerification)
        .where(OtpVerification.id == record_id, OtpVerification.is_used.is_(False))
        .values(is_used=True)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1
