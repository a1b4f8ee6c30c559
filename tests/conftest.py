import os
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="storefront-tests-")

# settings are read at import time , so the environment has to be in place first
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TMP_DIR, 'storefront.db')}"
os.environ["IDP_JWT_SECRET"] = "test-idp-secret"
os.environ["RZPAY_KEY"] = "rzp_test_fake"
os.environ["RZPAY_SECRET"] = "test-key-secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["GATEWAY_BACKOFF_BASE"] = "0"
os.environ["ENV"] = "dev"

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient
from sqlmodel import SQLModel
from storefront.db.connection import async_engine
from storefront.main import app
from storefront.payments.gateway import get_gateway
from tests.helpers import FakeGateway


@pytest.fixture(autouse=True)
async def db_schema():
    async with async_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield
    async with async_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
    await async_engine.dispose()


@pytest.fixture
def gateway():
    fake = FakeGateway()
    app.dependency_overrides[get_gateway] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_gateway, None)


@pytest.fixture
async def ac_client(gateway):
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
