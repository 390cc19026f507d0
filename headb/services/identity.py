"""Identity service: sign-in and API key management.

Sign-in hands out a working admin key immediately. The key belongs to a
scratch user that the device-flow poller later promotes, denies, drops, or
folds into an existing account once the provider has identified the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from headb.config import Settings
from headb.db.session import get_async_session
from headb.errors import HeadbError, InternalError, InvalidArgumentError, NotFoundError
from headb.models.permission import Role
from headb.services.api_key import ApiKeyService
from headb.services.auth import Authenticator, CallerIdentity
from headb.services.oauth.client import OAuthDeviceClient, ProviderError
from headb.services.oauth.device_flow import DeviceFlowPoller, SessionFactory
from headb.services.oauth.lifecycle import DeviceFlowRegistry, device_flow_registry
from headb.services.permissions import PermissionService
from headb.services.tokens import BearerTokenCodec, ProviderTokenCipher
from headb.services.users import UserService

logger = structlog.get_logger()

_SIGN_IN_MESSAGE = (
    "Sign-in process started, please open the following URL in your browser to "
    "authenticate with the identity provider: {uri} and enter this device code when "
    "prompted: {code}. All future requests should use the API key from this response "
    "or a newly created key. Save this key somewhere, it will not be available again "
    "and you will not be able to recreate an admin key."
)

# Keys issued through the API; admin keys only come from sign-in
_ISSUABLE_ROLES = (Role.WRITE, Role.READ)


@dataclass
class SignInResult:
    message: str
    api_key: str
    user_code: str
    verification_uri: str
    expires_in: int


@dataclass
class IssuedKey:
    api_key: str
    key_id: str
    role: Role
    database_id: str | None


@dataclass
class KeySummary:
    key_id: str
    last_used_at: datetime
    created_at: datetime


class IdentityService:
    """Sign-in, key issuance and token resolution."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        settings: Settings,
        codec: BearerTokenCodec,
        cipher: ProviderTokenCipher,
        oauth_client: OAuthDeviceClient,
        registry: DeviceFlowRegistry = device_flow_registry,
        session_factory: SessionFactory = get_async_session,
    ) -> None:
        self._db = db_session
        self._settings = settings
        self._codec = codec
        self._cipher = cipher
        self._oauth = oauth_client
        self._registry = registry
        self._session_factory = session_factory
        self._log = logger.bind(service="identity")

    def _permissions(self, db_session: AsyncSession) -> PermissionService:
        return PermissionService(
            db_session,
            combine_grants=self._settings.permissions.combine_grants,
        )

    async def sign_in(self) -> SignInResult:
        """Start a device-flow sign-in.

        Creates the scratch user with an admin key, asks the provider for a
        device code and starts polling in the background. The scratch rows
        are committed before the poller starts since it reads them from its
        own sessions.

        Raises:
            InternalError: Storage or provider failure; nothing is left behind
        """
        try:
            async with self._session_factory() as session:
                user = await UserService(session).create_pending()
                bearer, key = await ApiKeyService(
                    session, self._codec, self._settings.security
                ).generate_key_for(user)
                await self._permissions(session).add(key.id, None, Role.ADMIN, user.id)
        except (SQLAlchemyError, HeadbError) as e:
            self._log.error("sign_in.store_failed", error=str(e))
            raise InternalError("Could not start sign-in") from e

        try:
            device_code = await self._oauth.request_device_code()
        except ProviderError as e:
            self._log.error("sign_in.device_code_failed", user_id=user.id, error=str(e))
            await self._discard(user.id)
            raise InternalError("Could not start sign-in with the identity provider") from e

        poller = DeviceFlowPoller(
            client=self._oauth,
            cipher=self._cipher,
            user_id=user.id,
            device_code=device_code,
            session_factory=self._session_factory,
        )
        self._registry.spawn(poller)

        self._log.info("sign_in.started", user_id=user.id, key_id=key.id)
        return SignInResult(
            message=_SIGN_IN_MESSAGE.format(
                uri=device_code.verification_uri,
                code=device_code.user_code,
            ),
            api_key=bearer,
            user_code=device_code.user_code,
            verification_uri=device_code.verification_uri,
            expires_in=device_code.expires_in,
        )

    async def _discard(self, user_id: str) -> None:
        try:
            async with self._session_factory() as session:
                users = UserService(session)
                user = await users.get(user_id)
                if user is not None:
                    await users.purge(user)
        except SQLAlchemyError as e:
            self._log.error("sign_in.cleanup_failed", user_id=user_id, error=str(e))

    async def generate_api_key(
        self,
        caller: CallerIdentity,
        role: str,
        database_id: str | None = None,
    ) -> IssuedKey:
        """Issue a new write or read key for the caller's user.

        The caller must hold a global admin grant. With `database_id` the new
        key is scoped to that database, which the caller must own.

        Raises:
            PermissionDeniedError: Caller key is not a global admin key
            InvalidArgumentError: Role is not `write` or `read`
            NotFoundError: Database missing or not owned by the caller
        """
        permissions = self._permissions(self._db)
        await permissions.require(caller.key_id, None, Role.ADMIN)

        parsed = Role.parse(role)
        if parsed not in _ISSUABLE_ROLES:
            raise InvalidArgumentError(
                "Role must be one of `write` or `read`",
                details={"role": role},
            )

        keys = ApiKeyService(self._db, self._codec, self._settings.security)
        users = UserService(self._db)
        try:
            user = await users.get(caller.user_id)
            if user is None:
                raise NotFoundError("User could not be found")
            bearer, record = await keys.generate_key_for(user)
        except SQLAlchemyError as e:
            self._log.error("api_key.issue_failed", user_id=caller.user_id, error=str(e))
            raise InternalError("Could not create API key") from e

        await permissions.add(record.id, database_id, parsed, caller.user_id)

        return IssuedKey(
            api_key=bearer,
            key_id=record.id,
            role=parsed,
            database_id=database_id,
        )

    async def list_api_keys(self, caller: CallerIdentity) -> list[KeySummary]:
        await self._permissions(self._db).require(caller.key_id, None, Role.ADMIN)

        try:
            records = await ApiKeyService(self._db).list_for_user(caller.user_id)
        except SQLAlchemyError as e:
            self._log.error("api_key.list_failed", user_id=caller.user_id, error=str(e))
            raise InternalError("Could not list API keys") from e

        return [
            KeySummary(key_id=r.id, last_used_at=r.last_used_at, created_at=r.created_at)
            for r in records
        ]

    async def delete_api_key(self, caller: CallerIdentity, key_id: str) -> None:
        """Delete one of the caller's keys together with its grants.

        Raises:
            NotFoundError: No such key for the caller's user
        """
        permissions = self._permissions(self._db)
        await permissions.require(caller.key_id, None, Role.ADMIN)

        keys = ApiKeyService(self._db)
        try:
            record = await keys.get_for_user(key_id, caller.user_id)
            if record is None:
                raise NotFoundError("API key could not be found", details={"key_id": key_id})
            await permissions.delete_for_key(record.id)
            await keys.delete(record)
        except SQLAlchemyError as e:
            self._log.error("api_key.delete_failed", key_id=key_id, error=str(e))
            raise InternalError("Could not delete API key") from e

    async def resolve_api_key(self, bearer: str) -> CallerIdentity:
        """Resolve a bearer to its caller, with the failing step as error type.

        Raises:
            InvalidArgumentError: Bearer cannot be decoded
            NotFoundError: Key or user missing
            UnauthenticatedError: Wrong key value or user not accepted
            InternalError: Storage failure
        """
        authenticator = Authenticator(self._db, self._codec, self._settings.security)
        return await authenticator.resolve(bearer)
