from __future__ import annotations
import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from ...models import User


# Request fields are optional at the schema level so a missing field surfaces
# as "Missing required fields" from the service instead of a schema error.
class SendOtpIn(BaseModel):
    phone: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


class VerifyOtpIn(SendOtpIn):
    otp: Optional[str] = None


class LoginIn(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class UserOut(BaseModel):
    id: uuid.UUID
    email: str
    phone: str
    name: str
    is_verified: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, u: User) -> "UserOut":
        return cls(
            id=u.id,
            email=u.email,
            phone=u.phone,
            name=u.name,
            is_verified=u.is_verified,
            created_at=u.created_at,
            updated_at=u.updated_at,
        )


class SendOtpOut(BaseModel):
    success: bool = True
    message: str
    smsStatus: str
    smsError: Optional[str] = None
    devOtp: Optional[str] = None  # only when EXPOSE_DEV_OTP is on


class VerifyOtpOut(BaseModel):
    success: bool = True
    user: UserOut
    message: str


class LoginOut(BaseModel):
    success: bool = True
    user: UserOut
