"""
Test fixtures and configuration for pytest.

Each test gets its own SQLite file database (aiosqlite) and a fresh app
whose `get_db` dependency and monitoring service point at it.  Login
helpers clear the client's cookie jar afterwards so every request states
its credentials explicitly.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["MONITORING_ENABLED"] = "false"
os.environ["CREATE_SCHEMA_ON_STARTUP"] = "false"
os.environ["COOKIE_SECURE"] = "false"

from dataclasses import dataclass
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.database import get_db
from app.core.device import ClientInfo
from app.core.security import hash_password
from app.main import create_app
from app.models import Base, User, UserRole
from app.services import session_manager
from app.services.monitoring_service import SessionMonitoringService

PASSWORD = "correct-horse-battery"


@dataclass
class LoginResult:
    response: httpx.Response
    access_token: str
    refresh_token: str

    @property
    def auth(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}


def cookie_from(response: httpx.Response, name: str) -> str | None:
    """Value of a Set-Cookie header, parsed without the client's cookie policy."""
    for raw in response.headers.get_list("set-cookie"):
        key, _, rest = raw.partition("=")
        if key.strip() == name:
            return rest.split(";", 1)[0]
    return None


def client_info(
    ip: str = "127.0.0.1",
    fingerprint: str = "f" * 64,
    user_agent: str = "pytest-agent",
) -> ClientInfo:
    return ClientInfo(ip_address=ip, user_agent=user_agent, fingerprint=fingerprint)


@pytest.fixture(autouse=True)
def daytime(monkeypatch):
    """Pin the unusual-hours probe to midday so results do not depend on the wall clock."""
    monkeypatch.setattr(session_manager, "_local_hour", lambda now: 12)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def enable_foreign_keys(dbapi_connection, connection_record):
        # SQLite ignores ON DELETE CASCADE unless asked per connection
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def app(session_factory):
    application = create_app()
    application.state.monitoring = SessionMonitoringService(session_factory)

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    application.dependency_overrides[get_db] = override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_user(session_factory):
    async def _make_user(
        email: str = "alice@example.com",
        *,
        role: UserRole = UserRole.USER,
        password: str = PASSWORD,
        is_active: bool = True,
    ) -> User:
        async with session_factory() as session:
            user = User(
                email=email,
                password_hash=hash_password(password),
                first_name="Test",
                last_name="User",
                role=role,
                is_active=is_active,
            )
            session.add(user)
            await session.commit()
            return user

    return _make_user


@pytest_asyncio.fixture
async def user(make_user) -> User:
    return await make_user()


@pytest_asyncio.fixture
async def admin(make_user) -> User:
    return await make_user("root@example.com", role=UserRole.ADMIN)


@pytest.fixture
def login(client):
    async def _login(
        email: str = "alice@example.com",
        password: str = PASSWORD,
        headers: dict[str, str] | None = None,
    ) -> LoginResult:
        response = await client.post(
            "/api/auth/login",
            json={"email": email, "password": password},
            headers=headers,
        )
        assert response.status_code == 200, response.text
        client.cookies.clear()
        return LoginResult(
            response=response,
            access_token=response.json()["access_token"],
            refresh_token=cookie_from(response, "refresh_token"),
        )

    return _login
