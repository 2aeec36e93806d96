from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from otpgate.db import SessionLocal
from otpgate.models import OtpVerification, User
from otpgate.repos import otp_verifications as otp_repo
from otpgate.repos import users as users_repo
from otpgate.services import otp_issuer, otp_verifier
from otpgate.services.errors import (
    AttemptsExceeded, MissingFields, OtpExpired, OtpMismatch, OtpNotFound,
)
from otpgate.services.otp_issuer import issue_otp
from otpgate.services.otp_verifier import verify_otp
from tests.helpers import FakeSMS

import pytest
pytestmark = pytest.mark.asyncio

PHONE, EMAIL, NAME = "+919999999999", "a@x.com", "A"


@pytest.fixture
def fixed_codes(monkeypatch):
    """Make issue_otp hand out the given codes in order."""
    def _set(*codes: str):
        it = iter(codes)
        monkeypatch.setattr(otp_issuer, "generate_code", lambda: next(it))
    return _set


async def _issue(code: str, fixed_codes) -> None:
    fixed_codes(code)
    async with SessionLocal() as s:
        await issue_otp(s, phone=PHONE, email=EMAIL, name=NAME, sms=FakeSMS())


async def _verify(otp: str, *, phone=PHONE, email=EMAIL, name=NAME):
    async with SessionLocal() as s:
        return await verify_otp(s, phone=phone, email=email, name=name, otp=otp)


async def _record() -> OtpVerification:
    async with SessionLocal() as s:
        rows = await s.execute(select(OtpVerification).order_by(OtpVerification.created_at.desc()))
        return rows.scalars().first()


async def _user_count() -> int:
    async with SessionLocal() as s:
        return (await s.execute(select(func.count()).select_from(User))).scalar_one()


async def test_correct_code_consumes_record_and_creates_verified_user(fixed_codes):
    await _issue("123456", fixed_codes)

    res = await _verify("123456")

    assert res.created is True
    assert res.message == "User created successfully"
    assert res.user.is_verified is True
    assert (res.user.email, res.user.phone, res.user.name) == (EMAIL, PHONE, NAME)
    rec = await _record()
    assert rec.is_used is True
    assert rec.attempts == 0
    assert await _user_count() == 1


async def test_wrong_code_increments_attempts_by_one_and_never_consumes(fixed_codes):
    await _issue("123456", fixed_codes)

    for expected in (1, 2, 3):
        with pytest.raises(OtpMismatch):
            await _verify("654321")
        rec = await _record()
        assert rec.attempts == expected
        assert rec.is_used is False
    assert await _user_count() == 0


async def test_fourth_attempt_rejected_even_with_correct_code(fixed_codes):
    await _issue("123456", fixed_codes)
    for _ in range(3):
        with pytest.raises(OtpMismatch):
            await _verify("000000")

    with pytest.raises(AttemptsExceeded):
        await _verify("123456")

    rec = await _record()
    assert rec.attempts == 3
    assert rec.is_used is False
    assert await _user_count() == 0


async def test_expired_record_rejected_regardless_of_code(fixed_codes, monkeypatch):
    await _issue("123456", fixed_codes)
    later = datetime.now(timezone.utc) + timedelta(minutes=11)
    monkeypatch.setattr(otp_verifier, "_now_utc", lambda: later)

    with pytest.raises(OtpExpired):
        await _verify("123456")
    with pytest.raises(OtpExpired):
        await _verify("999999")

    rec = await _record()
    assert rec.attempts == 0 and rec.is_used is False


async def test_expiry_checked_before_attempts(fixed_codes, monkeypatch):
    await _issue("123456", fixed_codes)
    for _ in range(3):
        with pytest.raises(OtpMismatch):
            await _verify("000000")
    later = datetime.now(timezone.utc) + timedelta(minutes=11)
    monkeypatch.setattr(otp_verifier, "_now_utc", lambda: later)

    with pytest.raises(OtpExpired):
        await _verify("123456")


async def test_no_record_is_not_found():
    with pytest.raises(OtpNotFound):
        await _verify("123456")


async def test_record_for_other_email_is_not_reachable(fixed_codes):
    await _issue("123456", fixed_codes)
    with pytest.raises(OtpNotFound):
        await _verify("123456", email="b@x.com")


@pytest.mark.parametrize("field", ["phone", "email", "name", "otp"])
async def test_missing_field_rejected(field, fixed_codes):
    await _issue("123456", fixed_codes)
    kwargs = {"phone": PHONE, "email": EMAIL, "name": NAME, "otp": "123456"}
    kwargs[field] = ""
    async with SessionLocal() as s:
        with pytest.raises(MissingFields):
            await verify_otp(s, **kwargs)
    rec = await _record()
    assert rec.attempts == 0 and rec.is_used is False


async def test_only_newest_unused_record_is_checked(fixed_codes):
    fixed_codes("111111", "222222")
    async with SessionLocal() as s:
        await issue_otp(s, phone=PHONE, email=EMAIL, name=NAME, sms=FakeSMS())
        await issue_otp(s, phone=PHONE, email=EMAIL, name=NAME, sms=FakeSMS())

    with pytest.raises(OtpMismatch):
        await _verify("111111")

    res = await _verify("222222")
    assert res.created is True


async def test_second_verification_with_same_code_returns_same_user(fixed_codes):
    await _issue("123456", fixed_codes)

    first = await _verify("123456")
    second = await _verify("123456")

    assert first.message == "User created successfully"
    assert second.created is False
    assert second.message == "User already exists"
    assert second.user.id == first.user.id
    assert await _user_count() == 1


async def test_replay_with_different_code_is_not_found(fixed_codes):
    await _issue("123456", fixed_codes)
    await _verify("123456")

    with pytest.raises(OtpNotFound):
        await _verify("654321")


async def test_wrong_guesses_on_consumed_code_use_up_attempts(fixed_codes):
    await _issue("123456", fixed_codes)
    await _verify("123456")

    for expected in (1, 2, 3):
        with pytest.raises(OtpNotFound):
            await _verify(f"10000{expected}")
        assert (await _record()).attempts == expected

    with pytest.raises(AttemptsExceeded):
        await _verify("123456")
    with pytest.raises(AttemptsExceeded):
        await _verify("100004")
    assert (await _record()).attempts == 3


async def test_replay_after_expiry_is_not_found(fixed_codes, monkeypatch):
    await _issue("123456", fixed_codes)
    await _verify("123456")
    later = datetime.now(timezone.utc) + timedelta(minutes=11)
    monkeypatch.setattr(otp_verifier, "_now_utc", lambda: later)

    with pytest.raises(OtpNotFound):
        await _verify("123456")


async def test_existing_user_matched_by_phone_is_reused(db: AsyncSession, fixed_codes):
    existing = User(email="old@x.com", phone=PHONE, name="Old", is_verified=True)
    db.add(existing)
    await db.commit()
    await _issue("123456", fixed_codes)

    res = await _verify("123456")

    assert res.created is False
    assert res.message == "User already exists"
    assert res.user.id == existing.id
    assert res.user.email == "old@x.com"
    assert (await _record()).is_used is True
    assert await _user_count() == 1


async def test_record_consumed_concurrently_falls_back_to_replay(fixed_codes, monkeypatch):
    await _issue("123456", fixed_codes)
    first = await _verify("123456")

    # Simulate the race: our read still sees the record as unused, but the
    # compare-and-swap finds it already consumed.
    monkeypatch.setattr(otp_repo, "latest_unused", otp_repo.latest)

    res = await _verify("123456")
    assert res.created is False
    assert res.user.id == first.user.id
    assert await _user_count() == 1


async def test_losing_user_insert_race_returns_winning_user(db: AsyncSession, fixed_codes, monkeypatch):
    await _issue("123456", fixed_codes)
    winner = User(email=EMAIL, phone=PHONE, name="winner", is_verified=True)
    db.add(winner)
    await db.commit()

    # First lookup misses as if the winner had not committed yet; the insert
    # then hits the unique constraint and the retry lookup finds the winner.
    real_lookup = users_repo.get_by_email_or_phone
    calls = []

    async def _late_lookup(db, *, email, phone):
        calls.append((email, phone))
        if len(calls) == 1:
            return None
        return await real_lookup(db, email=email, phone=phone)

    monkeypatch.setattr(users_repo, "get_by_email_or_phone", _late_lookup)

    res = await _verify("123456")

    assert len(calls) == 2
    assert res.created is False
    assert res.message == "User already exists"
    assert res.user.id == winner.id
    assert res.user.name == "winner"
    assert (await _record()).is_used is True
    assert await _user_count() == 1
