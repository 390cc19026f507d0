"""Shared fixtures: settings with test keys, a SQLite database per test,
token codec and cipher, and a scripted OAuth provider."""

from __future__ import annotations

from contextlib import asynccontextmanager

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

import headb.models  # noqa: F401
from headb.config import Settings
from headb.models.user import User, UserStatus
from headb.services.oauth import OAuthDeviceClient
from headb.services.tokens import BearerTokenCodec, ProviderTokenCipher
from tests.fakes import FakeClock, FakeProvider

TEST_TOKEN_KEY = "t" * 32
TEST_PROVIDER_KEY = "p" * 32


@pytest.fixture
def settings() -> Settings:
    """Test settings with fixed keys, a cheap bcrypt cost and a fake provider."""
    return Settings(
        database={"url": "sqlite+aiosqlite:///:memory:"},
        oauth={
            "client_id": "test-client",
            "device_code_url": "https://provider.test/login/device/code",
            "access_token_url": "https://provider.test/login/oauth/access_token",
            "identity_url": "https://api.provider.test/user",
        },
        security={
            "token_aead_key": TEST_TOKEN_KEY,
            "provider_token_aead_key": TEST_PROVIDER_KEY,
            "bcrypt_rounds": 4,
        },
    )


@pytest.fixture
async def session_maker(tmp_path):
    """SQLite database file per test; separate sessions get separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'headb.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def session_factory(session_maker):
    """Committing session context manager, like get_async_session."""

    @asynccontextmanager
    async def factory():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return factory


@pytest.fixture
def codec(settings: Settings) -> BearerTokenCodec:
    return BearerTokenCodec.from_config(settings.security)


@pytest.fixture
def cipher(settings: Settings) -> ProviderTokenCipher:
    return ProviderTokenCipher.from_config(settings.security)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
async def oauth_client(settings: Settings, provider: FakeProvider):
    async with provider.client() as http_client:
        yield OAuthDeviceClient(settings.oauth, http_client=http_client)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_user(db_session: AsyncSession):
    """Create a user directly in the test session."""

    async def _make(
        status: UserStatus = UserStatus.ACCEPTED,
        username: str | None = "octocat",
        external_id: str | None = None,
    ) -> User:
        user = User(status=status, username=username, external_id=external_id)
        db_session.add(user)
        await db_session.flush()
        return user

    return _make
