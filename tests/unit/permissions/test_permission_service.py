"""Unit tests for PermissionService.

Covers grant storage (add, remove, uniqueness, ownership), evaluation with
the global-grant fallback, and both rules for combining a scoped grant with
a global one.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from headb.errors import (
    AlreadyExistsError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)
from headb.models.database import Database
from headb.models.permission import Permission, Role
from headb.services.permissions import PermissionService

KEY = "key-7"
DB = "db-42"


@pytest.fixture
async def owner(make_user):
    return await make_user()


@pytest.fixture
async def database(db_session, owner):
    db = Database(id=DB, name="notes", user_id=owner.id)
    db_session.add(db)
    await db_session.flush()
    return db


@pytest.fixture
def permissions(db_session) -> PermissionService:
    return PermissionService(db_session)


@pytest.fixture
def max_permissions(db_session) -> PermissionService:
    return PermissionService(db_session, combine_grants="max")


class TestAdd:
    async def test_global_grant(self, permissions, owner):
        permission = await permissions.add(KEY, None, "admin", owner.id)

        assert permission.key_id == KEY
        assert permission.database_id is None
        assert permission.role == Role.ADMIN

    async def test_scoped_grant(self, permissions, owner, database):
        permission = await permissions.add(KEY, DB, Role.READ, owner.id)

        assert permission.database_id == DB
        assert permission.role == Role.READ

    async def test_invalid_role(self, permissions, owner):
        with pytest.raises(InvalidArgumentError, match="Selected role is not valid"):
            await permissions.add(KEY, None, "owner", owner.id)

    async def test_missing_database(self, permissions, owner):
        with pytest.raises(NotFoundError, match="Database could not be found"):
            await permissions.add(KEY, "db-missing", "read", owner.id)

    async def test_database_of_another_user(self, permissions, database, make_user):
        stranger = await make_user(username="mallory")

        with pytest.raises(NotFoundError):
            await permissions.add(KEY, DB, "read", stranger.id)

    async def test_duplicate_scoped_grant(self, permissions, owner, database):
        await permissions.add(KEY, DB, "read", owner.id)

        with pytest.raises(AlreadyExistsError, match="already exists"):
            await permissions.add(KEY, DB, "write", owner.id)

    async def test_duplicate_global_grant(self, permissions, owner):
        """NULL scopes compare equal for uniqueness."""
        await permissions.add(KEY, None, "admin", owner.id)

        with pytest.raises(AlreadyExistsError):
            await permissions.add(KEY, None, "read", owner.id)

    async def test_storage_failure_is_internal(self, permissions, owner, db_session):
        error = OperationalError("INSERT", {}, Exception("disk I/O error"))
        with patch.object(db_session, "flush", new=AsyncMock(side_effect=error)):
            with pytest.raises(InternalError):
                await permissions.add(KEY, None, "admin", owner.id)


class TestRemove:
    async def test_remove(self, permissions, owner):
        permission = await permissions.add(KEY, None, "admin", owner.id)

        removed = await permissions.remove(permission.id)

        assert removed.id == permission.id
        assert await permissions.list_for_key(KEY) == []

    async def test_remove_missing(self, permissions):
        with pytest.raises(NotFoundError, match="Could not find permission set"):
            await permissions.remove("missing")

    async def test_delete_for_key(self, permissions, owner, database):
        await permissions.add(KEY, None, "admin", owner.id)
        await permissions.add(KEY, DB, "read", owner.id)
        await permissions.add("other-key", None, "read", owner.id)

        assert await permissions.delete_for_key(KEY) == 2
        assert await permissions.list_for_key(KEY) == []
        assert len(await permissions.list_for_key("other-key")) == 1


class TestCan:
    async def test_no_grant(self, permissions):
        assert await permissions.can(KEY, DB, "read") is False

    async def test_invalid_operation(self, permissions):
        with pytest.raises(InvalidArgumentError):
            await permissions.can(KEY, DB, "delete")

    async def test_global_write_allows_scoped_read(self, permissions, owner):
        await permissions.add(KEY, None, "write", owner.id)

        assert await permissions.can(KEY, DB, "read") is True
        assert await permissions.can(KEY, DB, "write") is True
        assert await permissions.can(KEY, DB, "admin") is False

    async def test_fallback_to_global_admin(self, permissions, owner):
        """A single global admin grant covers every operation on any database."""
        await permissions.add(KEY, None, "admin", owner.id)

        assert await permissions.can(KEY, DB, "read") is True
        assert await permissions.can(KEY, DB, "write") is True
        assert await permissions.can(KEY, DB, "admin") is True

    async def test_global_question_ignores_scoped_grants(self, permissions, owner, database):
        await permissions.add(KEY, DB, "admin", owner.id)

        assert await permissions.can(KEY, None, "read") is False

    async def test_scoped_grant_masks_global_by_default(self, permissions, owner, database):
        await permissions.add(KEY, None, "admin", owner.id)
        await permissions.add(KEY, DB, "read", owner.id)

        assert await permissions.can(KEY, DB, "read") is True
        assert await permissions.can(KEY, DB, "write") is False
        assert await permissions.can(KEY, DB, "admin") is False

    async def test_scoped_write_masks_global_admin(self, permissions, owner, database):
        await permissions.add(KEY, None, "admin", owner.id)
        await permissions.add(KEY, DB, "write", owner.id)

        assert await permissions.can(KEY, DB, "admin") is False

    async def test_max_rule_takes_higher_grant(self, max_permissions, owner, database):
        await max_permissions.add(KEY, None, "admin", owner.id)
        await max_permissions.add(KEY, DB, "read", owner.id)

        assert await max_permissions.can(KEY, DB, "read") is True
        assert await max_permissions.can(KEY, DB, "write") is True
        assert await max_permissions.can(KEY, DB, "admin") is True

    async def test_max_rule_with_only_scoped_grant(self, max_permissions, owner, database):
        await max_permissions.add(KEY, DB, "write", owner.id)

        assert await max_permissions.can(KEY, DB, "write") is True
        assert await max_permissions.can(KEY, DB, "admin") is False

    @pytest.mark.parametrize("combine", ["scoped_first", "max"])
    @pytest.mark.parametrize("global_role", [None, "read", "write", "admin"])
    @pytest.mark.parametrize("scoped_role", [None, "read", "write", "admin"])
    async def test_allowed_operation_implies_lower_ones(
        self, db_session, owner, database, combine, global_role, scoped_role
    ):
        permissions = PermissionService(db_session, combine_grants=combine)
        if global_role:
            await permissions.add(KEY, None, global_role, owner.id)
        if scoped_role:
            await permissions.add(KEY, DB, scoped_role, owner.id)

        for operation in Role:
            if await permissions.can(KEY, DB, operation):
                for lower in Role:
                    if lower.rank <= operation.rank:
                        assert await permissions.can(KEY, DB, lower)

    async def test_storage_failure_is_internal(self, permissions, db_session):
        error = OperationalError("SELECT", {}, Exception("disk I/O error"))
        with patch.object(db_session, "execute", new=AsyncMock(side_effect=error)):
            with pytest.raises(InternalError):
                await permissions.can(KEY, DB, "read")


class TestRequire:
    async def test_allowed(self, permissions, owner):
        await permissions.add(KEY, None, "admin", owner.id)
        await permissions.require(KEY, None, Role.ADMIN)

    async def test_admin_operation_without_global_admin(self, permissions, owner):
        await permissions.add(KEY, None, "write", owner.id)

        with pytest.raises(PermissionDeniedError, match="cannot be used for admin operations"):
            await permissions.require(KEY, None, Role.ADMIN)

    async def test_database_operation_denied(self, permissions, owner):
        await permissions.add(KEY, None, "read", owner.id)

        with pytest.raises(
            PermissionDeniedError,
            match="API key doesn't have the ability to write the database",
        ):
            await permissions.require(KEY, DB, "write")

    async def test_helpers(self, permissions, owner):
        await permissions.add(KEY, None, "write", owner.id)

        assert await permissions.can_read_database(KEY, DB) is True
        assert await permissions.can_write_database(KEY, DB) is True
        assert await permissions.can_admin_database(KEY, DB) is False
        assert await permissions.can_admin(KEY) is False


class TestCustomOwnership:
    async def test_ownership_check_is_injectable(self, db_session):
        ownership = AsyncMock(return_value=True)
        permissions = PermissionService(db_session, ownership=ownership)

        permission = await permissions.add(KEY, "external-db", "read", "user-1")

        ownership.assert_awaited_once_with(db_session, "external-db", "user-1")
        assert isinstance(permission, Permission)
