"""HTTP test client with database, codec and identity dependencies overridden."""

from __future__ import annotations

import httpx
import pytest
from fastapi import Depends

from headb.api.dependencies import (
    get_identity_service,
    get_permission_service,
    get_security_config,
    get_token_codec,
)
from headb.db.session import get_session_dependency
from headb.main import create_app
from headb.models.permission import Permission, Role
from headb.models.user import User, UserStatus
from headb.services.api_key import ApiKeyService
from headb.services.identity import IdentityService
from headb.services.permissions import PermissionService


class RecordingRegistry:
    """Collects pollers instead of running them."""

    def __init__(self) -> None:
        self.pollers = []

    def spawn(self, poller) -> None:
        self.pollers.append(poller)


@pytest.fixture
def registry() -> RecordingRegistry:
    return RecordingRegistry()


@pytest.fixture
def app(session_factory, settings, codec, cipher, oauth_client, registry):
    app = create_app()

    async def session_override():
        async with session_factory() as session:
            yield session

    async def identity_override(session=Depends(get_session_dependency)):
        return IdentityService(
            session,
            settings=settings,
            codec=codec,
            cipher=cipher,
            oauth_client=oauth_client,
            registry=registry,
            session_factory=session_factory,
        )

    async def permissions_override(session=Depends(get_session_dependency)):
        return PermissionService(session, combine_grants=settings.permissions.combine_grants)

    app.dependency_overrides[get_session_dependency] = session_override
    app.dependency_overrides[get_token_codec] = lambda: codec
    app.dependency_overrides[get_security_config] = lambda: settings.security
    app.dependency_overrides[get_identity_service] = identity_override
    app.dependency_overrides[get_permission_service] = permissions_override
    return app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def api_user(session_factory, codec, settings):
    """Create an accepted user and a bearer whose key has `role` globally."""

    async def _create(role: Role | None = Role.ADMIN, username: str = "octocat"):
        async with session_factory() as session:
            user = User(status=UserStatus.ACCEPTED, username=username)
            session.add(user)
            await session.flush()
            bearer, key = await ApiKeyService(
                session, codec, settings.security
            ).generate_key_for(user)
            if role is not None:
                session.add(Permission(key_id=key.id, database_id=None, role=role))
        return user, key, bearer

    return _create
