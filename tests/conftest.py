"""
Pytest fixtures for testing.

Each test gets its own in-memory SQLite database. Set TEST_WITH_POSTGRES=1 to
run against a PostgreSQL container instead (requires Docker).
"""
import os
from collections.abc import AsyncGenerator, Callable, Generator
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import Mock

# Must be set before any app imports that trigger Settings validation
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["DEV_MODE"] = "true"
os.environ["REDIS_ENABLED"] = "false"

import jwt  # noqa: E402
import pytest  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.engine import make_url  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from core.config import Settings, get_settings  # noqa: E402
from models.base import Base  # noqa: E402
from services.change_feed import ChangeFeed, set_change_feed  # noqa: E402

SQLITE_URL = "sqlite+aiosqlite://"
TEST_AUTH0_DOMAIN = "bookmarks-test.auth0.local"
TEST_AUTH0_AUDIENCE = "https://bookmarks.test/api"


@pytest.fixture(scope="session")
def database_url() -> Generator[str]:
    """Database URL for the test session (in-memory SQLite unless Postgres is requested)."""
    if os.environ.get("TEST_WITH_POSTGRES") != "1":
        yield SQLITE_URL
        return

    from testcontainers.postgres import PostgresContainer  # noqa: PLC0415

    with PostgresContainer("postgres:16", driver="asyncpg") as postgres:
        url = postgres.get_connection_url()
        os.environ["DATABASE_URL"] = url
        get_settings.cache_clear()
        yield url


@pytest.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async engine with a fresh schema."""
    if make_url(database_url).get_backend_name() == "sqlite":
        # One shared connection so every session sees the same in-memory database
        engine = create_async_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_async_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """
    Session for arranging and inspecting data directly.

    Unlike request sessions it is never committed automatically; tests commit
    when they need other sessions (or the change feed) to see their changes.
    """
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def change_feed() -> Generator[ChangeFeed]:
    """Process-local change feed, as the app runs without Redis."""
    feed = ChangeFeed()
    set_change_feed(feed)
    yield feed
    set_change_feed(None)


@pytest.fixture
def app(session_factory: async_sessionmaker[AsyncSession]) -> Generator[FastAPI]:
    """The API application with each request using its own test-database session."""
    # Clear the settings cache so it picks up DATABASE_URL from environment
    get_settings.cache_clear()

    from api.main import app as fastapi_app  # noqa: PLC0415
    from db.session import get_async_session, get_session_factory  # noqa: PLC0415

    async def override_get_async_session() -> AsyncGenerator[AsyncSession]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    fastapi_app.dependency_overrides[get_async_session] = override_get_async_session
    fastapi_app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Test client authenticated as the DEV_MODE user."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as test_client:
        yield test_client


@pytest.fixture(scope="session")
def signing_key() -> rsa.RSAPrivateKey:
    """RSA key standing in for the Auth0 tenant's signing key."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def auth_settings(database_url: str) -> Settings:
    """Settings with DEV_MODE off, so bearer tokens are required."""
    return Settings(
        _env_file=None,
        database_url=database_url,
        dev_mode=False,
        auth0_domain=TEST_AUTH0_DOMAIN,
        auth0_audience=TEST_AUTH0_AUDIENCE,
    )


@pytest.fixture
def jwt_auth(
    app: FastAPI,
    monkeypatch: pytest.MonkeyPatch,
    signing_key: rsa.RSAPrivateKey,
    auth_settings: Settings,
) -> Settings:
    """Require bearer tokens and validate them against the test signing key."""
    jwks_client = Mock()
    jwks_client.get_signing_key_from_jwt.return_value = SimpleNamespace(
        key=signing_key.public_key(),
    )
    monkeypatch.setattr("core.auth.get_jwks_client", lambda _settings: jwks_client)
    app.dependency_overrides[get_settings] = lambda: auth_settings
    return auth_settings


@pytest.fixture
def issue_token(signing_key: rsa.RSAPrivateKey, auth_settings: Settings) -> Callable[..., str]:
    """Issue RS256 access tokens shaped like Auth0's."""

    def _issue(
        sub: str,
        email: str | None = None,
        name: str | None = None,
        picture: str | None = None,
        expires_in: int = 3600,
        audience: str | None = None,
        issuer: str | None = None,
    ) -> str:
        now = datetime.now(UTC)
        claims = {
            "sub": sub,
            "aud": audience or auth_settings.auth0_audience,
            "iss": issuer or auth_settings.auth0_issuer,
            "iat": now,
            "exp": now + timedelta(seconds=expires_in),
        }
        for claim, value in (("email", email), ("name", name), ("picture", picture)):
            if value is not None:
                claims[claim] = value
        return jwt.encode(claims, signing_key, algorithm="RS256")

    return _issue


@pytest.fixture
async def make_user_client(
    app: FastAPI,
    jwt_auth: Settings,  # noqa: ARG001
    issue_token: Callable[..., str],
) -> AsyncGenerator[Callable[..., AsyncClient]]:
    """Factory for clients authenticated as distinct Auth0 users."""
    clients: list[AsyncClient] = []

    def _make(sub: str, **claims: str) -> AsyncClient:
        user_client = AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
            headers={"Authorization": f"Bearer {issue_token(sub, **claims)}"},
        )
        clients.append(user_client)
        return user_client

    yield _make

    for user_client in clients:
        await user_client.aclose()
