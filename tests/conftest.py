from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from helpers import ADMIN_PASSWORD
from httpx import ASGITransport, AsyncClient
from werkzeug.security import generate_password_hash

import valet.api as api
from valet.api import create_app
from valet.config import Settings


@pytest.fixture
def settings() -> Settings:
    return Settings(
        app_url="https://valet.test",
        vapid_public_key="test-public-key",
        vapid_private_key="test-private-key",
        admin_password_hash=generate_password_hash(
            ADMIN_PASSWORD, method="pbkdf2:sha256:1000"
        ),
    )


@pytest.fixture(autouse=True)
def push_mock(monkeypatch):
    """
    Patch the api-level import (api.py does `from valet.notifier import
    send_push`), so patching valet.notifier.send_push would not affect the app.
    """
    send = AsyncMock(return_value=None)
    monkeypatch.setattr(api, "send_push", send)
    return send


@pytest.fixture
def app(settings: Settings):
    return create_app(settings)


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client


@pytest_asyncio.fixture
async def admin_headers(client: AsyncClient) -> dict[str, str]:
    resp = await client.post("/api/admin/login", json={"password": ADMIN_PASSWORD})
    assert resp.status_code == 200
    return {"X-Admin-Token": resp.json()["token"]}
