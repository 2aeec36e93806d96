import os
import tempfile

# Settings are read at import time; configure before anything from otpgate loads.
_DB_DIR = tempfile.mkdtemp(prefix="otpgate-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["AUTHKEY_API_KEY"] = "test-authkey"
os.environ["ENV"] = "test"
os.environ["EXPOSE_DEV_OTP"] = "true"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest_asyncio

from otpgate.db import engine, SessionLocal
from otpgate.models import Base


# Fresh schema per test, on the SAME loop as the test function. Dispose the
# engine afterwards so no pooled connection leaks into the next test's loop.
@pytest_asyncio.fixture(autouse=True, loop_scope="function")
async def _db_schema():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest_asyncio.fixture
async def db():
    async with SessionLocal() as s:
        yield s


