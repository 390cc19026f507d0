"""Bearer authentication.

Resolution of a bearer to a caller:
1. Open the bearer (key value + key id)
2. Load the key record
3. Check the key value against the stored bcrypt hash
4. Load the owning user; only accepted users pass
5. Touch the key (`last_used_at`), best effort

`Authenticator.resolve` reports which step failed through the error type;
`Authenticator.authenticate` collapses every negative outcome into one
uniform UnauthenticatedError so callers cannot probe the steps.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from functools import lru_cache

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from headb.config import SecurityConfig
from headb.errors import (
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    UnauthenticatedError,
)
from headb.models.api_key import ApiKey
from headb.models.user import UserStatus
from headb.services.api_key import ApiKeyService
from headb.services.tokens import BearerTokenCodec, InvalidTokenError
from headb.services.users import UserService

logger = structlog.get_logger()


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated caller, attached to the request for the rest of the call."""

    user_id: str
    key_id: str
    username: str | None


@lru_cache
def _dummy_hash(rounds: int) -> str:
    # Compared against when the key id is unknown, so that path costs one bcrypt check too
    return ApiKeyService.hash_key(ApiKeyService.generate_verifier(), rounds)


class Authenticator:
    def __init__(
        self,
        db_session: AsyncSession,
        codec: BearerTokenCodec,
        security: SecurityConfig | None = None,
    ) -> None:
        self._db = db_session
        self._codec = codec
        # Real keys and the unknown-key dummy share one bcrypt cost
        self._rounds = (security or SecurityConfig()).bcrypt_rounds
        self._keys = ApiKeyService(db_session)
        self._users = UserService(db_session)
        self._log = logger.bind(service="auth")

    async def authenticate(self, bearer: str | None) -> CallerIdentity | None:
        """Authenticate a bearer.

        Returns:
            The caller, or None when no bearer was given

        Raises:
            UnauthenticatedError: Any rejected bearer, with the same message
            InternalError: Storage failure
        """
        if not bearer:
            return None

        try:
            return await self.resolve(bearer, touch=True)
        except (InvalidArgumentError, NotFoundError, UnauthenticatedError) as e:
            self._log.info("auth.failed", reason=e.code, detail=e.message)
            raise UnauthenticatedError() from None

    async def resolve(self, bearer: str, *, touch: bool = False) -> CallerIdentity:
        """Resolve a bearer to its caller, naming the failing step.

        Raises:
            InvalidArgumentError: Bearer cannot be opened
            NotFoundError: Key or owning user does not exist
            UnauthenticatedError: Key value mismatch or user not accepted
            InternalError: Storage failure
        """
        try:
            key_value, key_id = self._codec.decrypt(bearer)
        except InvalidTokenError as e:
            raise InvalidArgumentError("Could not decode the API key") from e

        try:
            record = await self._keys.get(key_id)
        except SQLAlchemyError as e:
            self._log.error("auth.store_failed", step="key", error=str(e))
            raise InternalError("Could not load API key") from e

        if record is None:
            dummy = await asyncio.to_thread(_dummy_hash, self._rounds)
            await asyncio.to_thread(ApiKeyService.verify_key, key_value, dummy)
            raise NotFoundError("API key could not be found")

        matches = await asyncio.to_thread(ApiKeyService.verify_key, key_value, record.hashed_value)
        if not matches:
            raise UnauthenticatedError("API key does not match")

        try:
            user = await self._users.get(record.user_id)
        except SQLAlchemyError as e:
            self._log.error("auth.store_failed", step="user", error=str(e))
            raise InternalError("Could not load user") from e

        if user is None:
            raise NotFoundError("User could not be found")
        if user.status == UserStatus.PENDING:
            raise UnauthenticatedError("User has not finished signing in")
        if user.status == UserStatus.DENIED:
            raise UnauthenticatedError("User sign-in was denied, please sign in again")

        if touch:
            await self._touch(record)

        return CallerIdentity(user_id=user.id, key_id=record.id, username=user.username)

    async def _touch(self, record: ApiKey) -> None:
        try:
            async with self._db.begin_nested():
                await self._keys.save(record)
        except SQLAlchemyError as e:
            self._log.warning("auth.touch_failed", key_id=record.id, error=str(e))
