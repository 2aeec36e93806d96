from __future__ import annotations
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import or_, select
from ..models import User


async def get_by_email_or_phone(db: AsyncSession, *, email: str, phone: str) -> Optional[User]:
    # email and phone may belong to two different accounts; the oldest wins
    res = await db.execute(
        select(User)
        .where(or_(User.email == email, User.phone == phone))
        .order_by(User.created_at.asc())
        .limit(1)
    )
    return res.scalars().first()


async def get_verified_by_email(db: AsyncSession, email: str) -> Optional[User]:
    res = await db.execute(select(User).where(User.email == email, User.is_verified.is_(True)))
    return res.scalar_one_or_none()


async def create_verified(db: AsyncSession, *, email: str, phone: str, name: str) -> User:
    user = User(email=email, phone=phone, name=name, is_verified=True)
    db.add(user)
    await db.flush()
    return user
