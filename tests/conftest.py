"""Shared test fixtures for Chatdesk."""

import pytest
from httpx import ASGITransport, AsyncClient

SECRET = "test-secret-key-for-unit-tests-0123456789"
PASSWORD = "correct-horse-battery"


@pytest.fixture
def settings_env(tmp_path, monkeypatch):
    """Point settings at a throwaway sqlite file and rebuild every singleton."""
    monkeypatch.setenv("CHATDESK_DB_URL", f"sqlite+aiosqlite:///{tmp_path / 'chatdesk.db'}")
    monkeypatch.setenv("CHATDESK_SECRET_KEY", SECRET)
    monkeypatch.setenv("CHATDESK_ENVIRONMENT", "test")
    monkeypatch.setenv("CHATDESK_STRIPE_WEBHOOK_SECRET", "whsec_test")
    # minimum bcrypt cost keeps registration fast
    monkeypatch.setattr("chatdesk.auth.passwords.ROUNDS", 4)

    from chatdesk.common.config import get_settings
    get_settings.cache_clear()

    from chatdesk.deps import reset_singletons
    reset_singletons()
    yield get_settings()
    get_settings.cache_clear()
    reset_singletons()


@pytest.fixture
async def db(settings_env):
    from chatdesk.deps import get_db

    manager = get_db()
    await manager.init()
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def app(settings_env):
    from chatdesk.app import create_app
    return create_app()


@pytest.fixture
async def client(app, db):
    # ASGITransport does not run lifespan; the db fixture initialized the schema.
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_tenant(db):
    async def _make(slug: str, name: str | None = None, **kwargs):
        from chatdesk.deps import get_tenant_service

        async with db.get_session() as session:
            return await get_tenant_service().create_tenant(
                session, name=name or slug.title(), slug=slug, **kwargs
            )

    return _make


@pytest.fixture
def make_user(db):
    async def _make(tenant, role: str = "agent", email: str | None = None, password: str = PASSWORD):
        from chatdesk.auth.models import UserModel
        from chatdesk.auth.passwords import hash_password

        tenant_id = tenant.id if tenant is not None else None
        async with db.get_session() as session:
            user = UserModel(
                email=email or f"{role}-{tenant_id or 'master'}@example.com",
                password_hash=hash_password(password),
                name=role.title(),
                role=role,
                tenant_id=tenant_id,
            )
            session.add(user)
            await session.flush()
            return user

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user, **extra) -> dict[str, str]:
        from chatdesk.deps import get_token_service

        token = get_token_service().issue_access(user)
        return {"Authorization": f"Bearer {token}", **extra}

    return _headers


@pytest.fixture
async def master(make_user):
    return await make_user(None, role="master", email="root@chatdesk.io")


@pytest.fixture
async def master_headers(master, auth_headers):
    return auth_headers(master)
