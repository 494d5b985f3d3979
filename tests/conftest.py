import os
import tempfile

# settings are read at import time, so the environment has to be ready first
_TMP = tempfile.mkdtemp(prefix="tpay-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP}/test.db"
os.environ["SERVICE_API_KEY"] = "test-service-key"
os.environ["TPAY_MERCHANT_ID"] = "12345"
os.environ["TPAY_SECRET"] = "s3cret"
os.environ["TPAY_ENV"] = "production"
os.environ["PUBLIC_BASE_URL"] = "http://testserver"
os.environ["INVOICE_STORAGE_DIR"] = os.path.join(_TMP, "invoices")
os.environ["FRONTEND_RETURN_URL"] = "https://school.example/payments/return?status=ok"
os.environ["FRONTEND_ERROR_URL"] = "https://school.example/payments/return?status=failed"
os.environ["LOG_CACHE_LOGGERS"] = "false"

import hashlib

import httpx
import pytest
from sqlmodel import SQLModel

from tpay_service import models  # noqa: F401
from tpay_service.db import async_session, engine

MERCHANT_ID = "12345"
SECRET = "s3cret"
API_KEY = "test-service-key"


@pytest.fixture
async def db():
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture
async def session(db):
    async with async_session() as s:
        yield s


@pytest.fixture
async def client(db):
    from tpay_service.main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


def notification(crc, amount="150.00", tr_id="TR-ABC-1", tr_status="TRUE", merchant_id=MERCHANT_ID, secret=SECRET):
    """Form body the gateway posts to the result_url, correctly signed unless told otherwise."""
    md5sum = hashlib.md5(f"{merchant_id}{tr_id}{amount}{crc}{secret}".encode("utf-8")).hexdigest()
    return {
        "id": merchant_id,
        "tr_id": tr_id,
        "tr_date": "2026-10-19 12:00:00",
        "tr_crc": crc,
        "tr_amount": amount,
        "tr_paid": amount,
        "tr_desc": "Piano lessons",
        "tr_status": tr_status,
        "tr_error": "none",
        "tr_email": "parent@example.com",
        "md5sum": md5sum,
    }
