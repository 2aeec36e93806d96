from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ...config import CORS_ALLOW_HEADERS, CORS_ALLOW_METHODS, get_settings
from ...db import get_db
from ...domain.schemas.auth import (
    LoginIn, LoginOut, SendOtpIn, SendOtpOut, UserOut, VerifyOtpIn, VerifyOtpOut,
)
from ...repos import users as users_repo
from ...services.errors import (
    AttemptsExceeded, MissingFields, OtpError, OtpExpired, OtpMismatch, OtpNotFound, StoreError,
)
from ...services.otp_issuer import issue_otp
from ...services.otp_verifier import verify_otp
from ...services.sms import AuthkeySMSService, get_sms_service

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)

S = get_settings()

_STATUS_BY_ERROR = {
    MissingFields: status.HTTP_400_BAD_REQUEST,
    OtpExpired: status.HTTP_400_BAD_REQUEST,
    AttemptsExceeded: status.HTTP_400_BAD_REQUEST,
    OtpMismatch: status.HTTP_400_BAD_REQUEST,
    OtpNotFound: status.HTTP_404_NOT_FOUND,
    StoreError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _to_http(exc: OtpError) -> HTTPException:
    code = _STATUS_BY_ERROR.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(status_code=code, detail=str(exc))


@router.options("/send-otp", include_in_schema=False)
@router.options("/verify-otp", include_in_schema=False)
@router.options("/login", include_in_schema=False)
async def options_ok():
    # browser pre-flights (Origin + Access-Control-Request-Method) are answered
    # by CORSMiddleware; any other OPTIONS lands here and gets a plain 200
    headers = {
        "Access-Control-Allow-Methods": ", ".join(CORS_ALLOW_METHODS),
        "Access-Control-Allow-Headers": ", ".join(CORS_ALLOW_HEADERS),
    }
    if "*" in S.CORS_ALLOW_ORIGINS:
        headers["Access-Control-Allow-Origin"] = "*"
    return Response(status_code=status.HTTP_200_OK, headers=headers)


@router.post("/send-otp", response_model=SendOtpOut, response_model_exclude_none=True)
async def send_otp(
    payload: SendOtpIn,
    db: AsyncSession = Depends(get_db),
    sms: AuthkeySMSService = Depends(get_sms_service),
):
    try:
        res = await issue_otp(db, phone=payload.phone, email=payload.email, name=payload.name, sms=sms)
    except OtpError as e:
        raise _to_http(e)

    return SendOtpOut(
        message="OTP sent successfully",
        smsStatus=res.sms_status,
        smsError=res.sms_error,
        devOtp=res.code if S.expose_dev_otp else None,
    )


@router.post("/verify-otp", response_model=VerifyOtpOut)
async def verify(payload: VerifyOtpIn, db: AsyncSession = Depends(get_db)):
    try:
        res = await verify_otp(
            db, phone=payload.phone, email=payload.email, name=payload.name, otp=payload.otp
        )
    except OtpError as e:
        raise _to_http(e)

    return VerifyOtpOut(user=UserOut.from_model(res.user), message=res.message)


@router.post("/login", response_model=LoginOut)
async def login(payload: LoginIn, db: AsyncSession = Depends(get_db)):
    # Password is accepted but not checked: accounts are created by OTP and carry no hash.
    if not payload.email or not payload.email.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")
    try:
        user = await users_repo.get_verified_by_email(db, payload.email.strip())
    except SQLAlchemyError:
        logger.exception("Error looking up user for login")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Login failed")
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")
    return LoginOut(user=UserOut.from_model(user))
