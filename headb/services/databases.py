"""Database ownership lookups used by the permission store."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from headb.models.database import Database

# (session, database_id, user_id) -> whether the database exists and is owned by the user
OwnershipCheck = Callable[[AsyncSession, str, str], Awaitable[bool]]


async def database_owned_by(db_session: AsyncSession, database_id: str, user_id: str) -> bool:
    result = await db_session.execute(
        select(Database.id).where(Database.id == database_id, Database.user_id == user_id)
    )
    return result.first() is not None
