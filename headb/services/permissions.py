"""Permission store and evaluator.

A grant ties an API key to a role, either on one database or globally
(`database_id = None`, every database owned by the key's user).

Evaluation of `can(key, database, operation)`:
1. Look up the grant scoped to exactly (key, database)
2. If a database was given and no scoped grant exists, fall back to the
   key's global grant
3. No grant anywhere -> not allowed

With ``combine_grants="max"`` both grants are read and the higher role
decides, so a narrow scoped grant no longer hides a broader global one.
"""

from __future__ import annotations

from typing import Literal

import structlog
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from headb.errors import (
    AlreadyExistsError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)
from headb.models.permission import Permission, Role
from headb.services.databases import OwnershipCheck, database_owned_by

logger = structlog.get_logger()

CombineGrants = Literal["scoped_first", "max"]

_INVALID_ROLE_MESSAGE = "Selected role is not valid, must be one of `admin`, `write`, or `read`"


def _parse_role(value: str | Role) -> Role:
    role = Role.parse(value)
    if role is None:
        raise InvalidArgumentError(_INVALID_ROLE_MESSAGE, details={"role": str(value)})
    return role


class PermissionService:
    """Manages permission grants and answers authorization questions."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        combine_grants: CombineGrants = "scoped_first",
        ownership: OwnershipCheck = database_owned_by,
    ) -> None:
        self._db = db_session
        self._combine = combine_grants
        self._ownership = ownership
        self._log = logger.bind(service="permissions")

    async def add(
        self,
        key_id: str,
        database_id: str | None,
        role: str | Role,
        requester_user_id: str,
    ) -> Permission:
        """Grant `role` to a key, on one database or globally.

        Raises:
            InvalidArgumentError: Unknown role
            NotFoundError: Database missing or not owned by the requester
            AlreadyExistsError: The key already has a grant on that scope
            InternalError: Storage failure
        """
        parsed = _parse_role(role)

        try:
            if database_id is not None:
                owned = await self._ownership(self._db, database_id, requester_user_id)
                if not owned:
                    raise NotFoundError(
                        "Database could not be found",
                        details={"database_id": database_id},
                    )

            if await self._find(key_id, database_id) is not None:
                raise AlreadyExistsError(
                    "Could not save permission set, set probably already exists"
                )

            permission = Permission(key_id=key_id, database_id=database_id, role=parsed)
            self._db.add(permission)
            await self._db.flush()
            await self._db.refresh(permission)
        except IntegrityError as e:
            self._log.warning(
                "permissions.add.conflict",
                key_id=key_id,
                database_id=database_id,
                error=str(e.orig),
            )
            raise AlreadyExistsError(
                "Could not save permission set, set probably already exists"
            ) from e
        except SQLAlchemyError as e:
            self._log.error("permissions.add.failed", key_id=key_id, error=str(e))
            raise InternalError("Could not save permission set") from e

        self._log.info(
            "permissions.added",
            permission_id=permission.id,
            key_id=key_id,
            database_id=database_id,
            role=parsed.value,
        )
        return permission

    async def get(self, permission_id: str) -> Permission:
        try:
            permission = await self._db.get(Permission, permission_id)
        except SQLAlchemyError as e:
            self._log.error("permissions.get.failed", permission_id=permission_id, error=str(e))
            raise InternalError("Could not find permission set") from e

        if permission is None:
            raise NotFoundError("Could not find permission set")
        return permission

    async def remove(self, permission_id: str) -> Permission:
        """Delete a grant by id.

        Raises:
            NotFoundError: No grant with that id
        """
        permission = await self.get(permission_id)
        try:
            await self._db.delete(permission)
            await self._db.flush()
        except SQLAlchemyError as e:
            self._log.error("permissions.remove.failed", permission_id=permission_id, error=str(e))
            raise InternalError("Could not delete permission set") from e

        self._log.info("permissions.removed", permission_id=permission_id)
        return permission

    async def list_for_key(self, key_id: str) -> list[Permission]:
        result = await self._db.execute(select(Permission).where(Permission.key_id == key_id))
        return list(result.scalars().all())

    async def delete_for_key(self, key_id: str) -> int:
        """Drop every grant of a key. Used when the key itself is deleted."""
        result = await self._db.execute(delete(Permission).where(Permission.key_id == key_id))
        await self._db.flush()
        return result.rowcount or 0

    async def can(
        self,
        key_id: str,
        database_id: str | None,
        operation: str | Role,
    ) -> bool:
        """Decide whether a key may perform `operation` on a database.

        Raises:
            InvalidArgumentError: Unknown operation
            InternalError: Storage failure
        """
        op = _parse_role(operation)

        try:
            grant = await self._resolve_grant(key_id, database_id)
        except SQLAlchemyError as e:
            self._log.error("permissions.can.failed", key_id=key_id, error=str(e))
            raise InternalError("Could not find permission set") from e

        if grant is None:
            self._log.debug(
                "permissions.can.no_grant",
                key_id=key_id,
                database_id=database_id,
                operation=op.value,
            )
            return False

        return grant.role.satisfies(op)

    async def require(self, key_id: str, database_id: str | None, operation: str | Role) -> None:
        """Raise PermissionDeniedError unless `can` allows the operation."""
        op = _parse_role(operation)
        if await self.can(key_id, database_id, op):
            return

        if database_id is None and op == Role.ADMIN:
            raise PermissionDeniedError("API key cannot be used for admin operations")
        raise PermissionDeniedError(
            f"API key doesn't have the ability to {op.value} the database",
            details={"database_id": database_id} if database_id else None,
        )

    async def can_admin(self, key_id: str) -> bool:
        """Whether the key holds a global admin grant (user-level operations)."""
        return await self.can(key_id, None, Role.ADMIN)

    async def can_admin_database(self, key_id: str, database_id: str) -> bool:
        return await self.can(key_id, database_id, Role.ADMIN)

    async def can_write_database(self, key_id: str, database_id: str) -> bool:
        return await self.can(key_id, database_id, Role.WRITE)

    async def can_read_database(self, key_id: str, database_id: str) -> bool:
        return await self.can(key_id, database_id, Role.READ)

    async def _resolve_grant(self, key_id: str, database_id: str | None) -> Permission | None:
        scoped = await self._find(key_id, database_id)
        if database_id is None:
            return scoped

        if self._combine == "max":
            fallback = await self._find(key_id, None)
            grants = [g for g in (scoped, fallback) if g is not None]
            return max(grants, key=lambda g: g.role.rank, default=None)

        if scoped is not None:
            return scoped
        return await self._find(key_id, None)

    async def _find(self, key_id: str, database_id: str | None) -> Permission | None:
        """Fetch the grant for exactly (key, database); None matches global grants only."""
        if database_id is None:
            scope = Permission.database_id.is_(None)
        else:
            scope = Permission.database_id == database_id

        result = await self._db.execute(
            select(Permission).where(Permission.key_id == key_id, scope)
        )
        return result.scalars().first()
