"""Unit tests for Authenticator.

Every rejected bearer surfaces as the same UnauthenticatedError; `resolve`
names the failing step through the error type.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from headb.config import SecurityConfig
from headb.errors import (
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    UnauthenticatedError,
)
from headb.models.user import User, UserStatus
from headb.services.api_key import ApiKeyService
from headb.services.auth import Authenticator, CallerIdentity, _dummy_hash
from headb.utils.datetime import as_utc

UNIFORM_MESSAGE = "Could not authenticate with the given API key"


def _db_error() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("database is locked"))


@pytest.fixture
def authenticator(db_session, codec, settings) -> Authenticator:
    return Authenticator(db_session, codec, settings.security)


@pytest.fixture
def issue_key(db_session, codec, settings, make_user):
    async def _issue(status: UserStatus = UserStatus.ACCEPTED, username: str = "octocat"):
        user = await make_user(status=status, username=username)
        bearer, record = await ApiKeyService(
            db_session, codec, settings.security
        ).generate_key_for(user)
        return bearer, record, user

    return _issue


class TestAuthenticate:
    async def test_accepted_user(self, authenticator, issue_key):
        bearer, record, user = await issue_key()

        caller = await authenticator.authenticate(bearer)

        assert caller == CallerIdentity(user_id=user.id, key_id=record.id, username="octocat")

    async def test_empty_bearer_is_anonymous(self, db_session, codec, settings):
        with patch.object(db_session, "execute", new=AsyncMock()) as execute, patch.object(
            db_session, "get", new=AsyncMock()
        ) as get:
            caller = await Authenticator(db_session, codec, settings.security).authenticate("")

        assert caller is None
        execute.assert_not_called()
        get.assert_not_called()

    async def test_none_bearer_is_anonymous(self, authenticator):
        assert await authenticator.authenticate(None) is None

    async def test_tampered_bearer(self, authenticator, issue_key):
        bearer, _, _ = await issue_key()

        with pytest.raises(UnauthenticatedError) as exc_info:
            await authenticator.authenticate(bearer + "x")

        assert exc_info.value.message == UNIFORM_MESSAGE

    async def test_deleted_key(self, authenticator, issue_key, db_session):
        bearer, record, _ = await issue_key()
        await ApiKeyService(db_session).delete(record)

        with pytest.raises(UnauthenticatedError) as exc_info:
            await authenticator.authenticate(bearer)

        assert exc_info.value.message == UNIFORM_MESSAGE

    async def test_wrong_verifier(self, authenticator, issue_key, codec):
        _, record, _ = await issue_key()
        forged = codec.encrypt("not-the-verifier", record.id, record.created_at.replace(year=2999))

        with pytest.raises(UnauthenticatedError) as exc_info:
            await authenticator.authenticate(forged)

        assert exc_info.value.message == UNIFORM_MESSAGE

    @pytest.mark.parametrize("status", [UserStatus.PENDING, UserStatus.DENIED])
    async def test_user_not_accepted(self, authenticator, issue_key, status):
        bearer, _, _ = await issue_key(status=status)

        with pytest.raises(UnauthenticatedError) as exc_info:
            await authenticator.authenticate(bearer)

        assert exc_info.value.message == UNIFORM_MESSAGE

    async def test_touch_updates_last_used(self, authenticator, issue_key):
        bearer, record, _ = await issue_key()
        before = as_utc(record.last_used_at)

        await authenticator.authenticate(bearer)

        assert as_utc(record.last_used_at) >= before

    async def test_touch_failure_is_ignored(self, authenticator, issue_key):
        bearer, record, user = await issue_key()

        with patch.object(ApiKeyService, "save", new=AsyncMock(side_effect=_db_error())):
            caller = await authenticator.authenticate(bearer)

        assert caller.key_id == record.id
        assert caller.user_id == user.id

    async def test_storage_failure_is_internal(self, authenticator, issue_key):
        bearer, _, _ = await issue_key()

        with patch.object(ApiKeyService, "get", new=AsyncMock(side_effect=_db_error())):
            with pytest.raises(InternalError):
                await authenticator.authenticate(bearer)


class TestResolve:
    async def test_undecodable(self, authenticator):
        with pytest.raises(InvalidArgumentError):
            await authenticator.resolve("v1.garbage")

    async def test_missing_key(self, authenticator, issue_key, db_session):
        bearer, record, _ = await issue_key()
        await ApiKeyService(db_session).delete(record)

        with pytest.raises(NotFoundError):
            await authenticator.resolve(bearer)

    async def test_missing_user(self, authenticator, issue_key, db_session):
        bearer, _, user = await issue_key()
        await db_session.delete(user)
        await db_session.flush()

        with pytest.raises(NotFoundError):
            await authenticator.resolve(bearer)

    async def test_pending_user(self, authenticator, issue_key):
        bearer, _, _ = await issue_key(status=UserStatus.PENDING)

        with pytest.raises(UnauthenticatedError, match="finished signing in"):
            await authenticator.resolve(bearer)

    async def test_denied_user(self, authenticator, issue_key):
        bearer, _, _ = await issue_key(status=UserStatus.DENIED)

        with pytest.raises(UnauthenticatedError, match="sign in again"):
            await authenticator.resolve(bearer)


def _cost(hashed_value: str) -> int:
    # bcrypt hashes read "$2b$<cost>$<salt+digest>"
    return int(hashed_value.split("$")[2])


class TestUnknownKeyCost:
    def test_dummy_hash_uses_requested_cost(self):
        assert _cost(_dummy_hash(5)) == 5
        assert _cost(_dummy_hash(6)) == 6

    async def test_deleted_key_checks_at_configured_cost(self, db_session, codec, settings):
        security = settings.security.model_copy(update={"bcrypt_rounds": 6})
        user = await _accepted_user(db_session)
        bearer, record = await ApiKeyService(db_session, codec, security).generate_key_for(user)
        await ApiKeyService(db_session).delete(record)

        checked = []
        real_verify = ApiKeyService.verify_key

        def recording_verify(verifier: str, hashed_value: str) -> bool:
            checked.append(hashed_value)
            return real_verify(verifier, hashed_value)

        with patch.object(ApiKeyService, "verify_key", side_effect=recording_verify):
            with pytest.raises(NotFoundError):
                await Authenticator(db_session, codec, security).resolve(bearer)

        assert len(checked) == 1
        assert _cost(checked[0]) == _cost(record.hashed_value) == 6

    async def test_default_config_matches_default_key_cost(self, db_session, codec):
        authenticator = Authenticator(db_session, codec)

        assert authenticator._rounds == SecurityConfig().bcrypt_rounds


async def _accepted_user(db_session) -> User:
    user = User(status=UserStatus.ACCEPTED, username="octocat")
    db_session.add(user)
    await db_session.flush()
    return user
