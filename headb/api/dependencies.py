"""FastAPI dependencies for the headb API.

Provides dependency injection for:
- Database sessions
- Token codec and provider cipher (built once from settings)
- Services (Identity, Permissions)
- Authentication
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

import structlog
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from headb.config import SecurityConfig, get_settings
from headb.db.session import get_session_dependency
from headb.errors import UnauthenticatedError
from headb.services.auth import Authenticator, CallerIdentity
from headb.services.identity import IdentityService
from headb.services.oauth import OAuthDeviceClient
from headb.services.permissions import PermissionService
from headb.services.tokens import BearerTokenCodec, ProviderTokenCipher

logger = structlog.get_logger()


@lru_cache
def get_token_codec() -> BearerTokenCodec:
    """Get cached bearer codec built from the configured key."""
    return BearerTokenCodec.from_config(get_settings().security)


def get_security_config() -> SecurityConfig:
    return get_settings().security


@lru_cache
def get_provider_cipher() -> ProviderTokenCipher:
    return ProviderTokenCipher.from_config(get_settings().security)


def get_oauth_client() -> OAuthDeviceClient:
    return OAuthDeviceClient(get_settings().oauth)


def _bearer_from_header(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return None

    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer":
        raise UnauthenticatedError("Authorization header must use the Bearer scheme")
    return token.strip() or None


async def authenticate_optional(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
    codec: Annotated[BearerTokenCodec, Depends(get_token_codec)],
    security: Annotated[SecurityConfig, Depends(get_security_config)],
) -> CallerIdentity | None:
    """Resolve the caller from the Authorization header, if any.

    The caller is stored on ``request.state.caller`` for the rest of the call.
    """
    bearer = _bearer_from_header(request)
    caller = await Authenticator(session, codec, security).authenticate(bearer)
    request.state.caller = caller
    if caller is not None:
        logger.debug("auth.success", user_id=caller.user_id, key_id=caller.key_id)
    return caller


async def authenticate(
    caller: Annotated[CallerIdentity | None, Depends(authenticate_optional)],
) -> CallerIdentity:
    """Require an authenticated caller.

    Raises:
        UnauthenticatedError: No bearer or a rejected one
    """
    if caller is None:
        raise UnauthenticatedError("Authentication required")
    return caller


async def get_permission_service(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
) -> PermissionService:
    return PermissionService(
        session,
        combine_grants=get_settings().permissions.combine_grants,
    )


async def get_identity_service(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
    codec: Annotated[BearerTokenCodec, Depends(get_token_codec)],
    cipher: Annotated[ProviderTokenCipher, Depends(get_provider_cipher)],
    oauth_client: Annotated[OAuthDeviceClient, Depends(get_oauth_client)],
) -> IdentityService:
    """Get IdentityService with injected dependencies."""
    return IdentityService(
        session,
        settings=get_settings(),
        codec=codec,
        cipher=cipher,
        oauth_client=oauth_client,
    )


# Type aliases for cleaner dependency injection
SessionDep = Annotated[AsyncSession, Depends(get_session_dependency)]
AuthDep = Annotated[CallerIdentity, Depends(authenticate)]
OptionalAuthDep = Annotated[CallerIdentity | None, Depends(authenticate_optional)]
IdentityServiceDep = Annotated[IdentityService, Depends(get_identity_service)]
PermissionServiceDep = Annotated[PermissionService, Depends(get_permission_service)]
