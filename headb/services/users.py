"""User store."""

from __future__ import annotations

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from headb.models.api_key import ApiKey
from headb.models.permission import Permission
from headb.models.user import User, UserStatus
from headb.utils.datetime import utcnow

logger = structlog.get_logger()


class UserService:
    """Persistence for users and their sign-in status."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._log = logger.bind(service="user")

    async def create_pending(self) -> User:
        """Create a scratch user: status pending, every identity field empty."""
        user = User(status=UserStatus.PENDING)
        self._db.add(user)
        await self._db.flush()
        await self._db.refresh(user)

        self._log.info("user.pending_created", user_id=user.id)
        return user

    async def get(self, user_id: str) -> User | None:
        return await self._db.get(User, user_id)

    async def find_by_external_id(self, external_id: str) -> User | None:
        """Find the user the identity provider knows as `external_id`."""
        result = await self._db.execute(select(User).where(User.external_id == external_id))
        return result.scalars().first()

    async def save(self, user: User) -> User:
        user.updated_at = utcnow()
        self._db.add(user)
        await self._db.flush()
        return user

    async def delete(self, user: User) -> None:
        await self._db.delete(user)
        await self._db.flush()
        self._log.info("user.deleted", user_id=user.id, status=user.status.value)

    async def purge(self, user: User) -> None:
        """Delete a user together with its keys and their grants.

        Used to drop scratch users whose sign-in failed; the key minted at
        sign-in must not outlive them.
        """
        key_ids = select(ApiKey.id).where(ApiKey.user_id == user.id)
        await self._db.execute(delete(Permission).where(Permission.key_id.in_(key_ids)))
        await self._db.execute(delete(ApiKey).where(ApiKey.user_id == user.id))
        await self.delete(user)
