"""Shared test fixtures for Membership-Engine."""

import pytest
from httpx import ASGITransport, AsyncClient

from membership_engine.accounts.service import AccountService
from membership_engine.common.database import DatabaseManager
from tests.fakes import API_KEY, GATEWAY_KEY, WEBHOOK_SECRET, FakeProvider, make_settings


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
async def db(settings):
    manager = DatabaseManager(settings)
    await manager.init()
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def accounts():
    return AccountService()


@pytest.fixture
async def user(db, accounts):
    async with db.get_session() as session:
        return await accounts.create_user(session, email="u1@example.com", name="U1", user_id="u1")


@pytest.fixture
def app(provider, monkeypatch):
    """Create a test app with in-memory DB and the fake provider."""
    monkeypatch.setenv("MEMBERSHIP_DB_URL", "sqlite+aiosqlite://")
    monkeypatch.setenv("MEMBERSHIP_API_KEY", API_KEY)
    monkeypatch.setenv("MEMBERSHIP_GATEWAY_KEY", GATEWAY_KEY)
    monkeypatch.setenv("MEMBERSHIP_STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)

    # Clear caches and singletons so new env vars take effect
    from membership_engine.common.config import get_settings
    get_settings.cache_clear()

    from membership_engine.deps import reset_singletons, set_provider
    reset_singletons()
    set_provider(provider)

    from membership_engine.app import create_app
    return create_app()


@pytest.fixture
async def app_db(app):
    # Manually init DB since ASGITransport doesn't run lifespan
    from membership_engine.deps import get_db
    db = get_db()
    await db.init()
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
async def client(app, app_db):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers():
    return {"X-Membership-Api-Key": API_KEY}


@pytest.fixture
def caller_headers():
    def _headers(user_id: str = "u1") -> dict[str, str]:
        return {"X-Gateway-Key": GATEWAY_KEY, "X-User-Id": user_id}
    return _headers
