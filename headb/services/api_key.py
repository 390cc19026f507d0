"""API Key service.

Handles verifier generation, hashing and verification, key issuance, and
persistence of key records (list, fetch, upsert, delete, transfer).
"""

from __future__ import annotations

import asyncio
import base64
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING

import bcrypt
import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from headb.models.api_key import ApiKey
from headb.utils.datetime import as_utc, utcnow

if TYPE_CHECKING:
    from headb.config import SecurityConfig
    from headb.models.user import User
    from headb.services.tokens import BearerTokenCodec

logger = structlog.get_logger()

# 24 random bytes -> 32 URL-safe characters
_VERIFIER_BYTES = 24


class ApiKeyService:
    """Service for API key lifecycle management."""

    def __init__(
        self,
        db_session: AsyncSession,
        codec: BearerTokenCodec | None = None,
        security: SecurityConfig | None = None,
    ) -> None:
        self._db = db_session
        self._codec = codec
        self._security = security
        self._log = logger.bind(service="api_key")

    @staticmethod
    def generate_verifier() -> str:
        """Generate a new random verifier, URL-safe encoded."""
        return base64.urlsafe_b64encode(secrets.token_bytes(_VERIFIER_BYTES)).decode("ascii")

    @staticmethod
    def hash_key(verifier: str, rounds: int = 10) -> str:
        """Hash a verifier with bcrypt.

        Args:
            verifier: The plain verifier
            rounds: bcrypt work factor

        Returns:
            bcrypt hash string
        """
        return bcrypt.hashpw(verifier.encode(), bcrypt.gensalt(rounds=rounds)).decode()

    @staticmethod
    def verify_key(verifier: str, hashed_value: str) -> bool:
        """Verify a verifier against a stored bcrypt hash.

        Returns:
            True if the verifier matches, False on mismatch or malformed hash
        """
        try:
            return bcrypt.checkpw(verifier.encode(), hashed_value.encode())
        except ValueError:
            return False

    async def generate_key_for(self, user: User) -> tuple[str, ApiKey]:
        """Mint a new key for a user.

        The verifier is hashed and stored, then sealed together with the new
        record id into the bearer. Neither the verifier nor the bearer is
        persisted.

        Returns:
            Tuple of (bearer, stored record)
        """
        if self._codec is None or self._security is None:
            raise RuntimeError("ApiKeyService needs a codec and security config to issue keys")

        verifier = self.generate_verifier()
        hashed_value = await asyncio.to_thread(
            self.hash_key, verifier, self._security.bcrypt_rounds
        )

        record = await self.save(ApiKey(hashed_value=hashed_value, user_id=user.id))

        expires_at = utcnow() + timedelta(days=self._security.bearer_lifetime_days)
        bearer = self._codec.encrypt(verifier, record.id, expires_at)

        self._log.info("api_key.issued", key_id=record.id, user_id=user.id)
        return bearer, record

    async def list_for_user(self, user_id: str) -> list[ApiKey]:
        result = await self._db.execute(
            select(ApiKey).where(ApiKey.user_id == user_id).order_by(ApiKey.created_at)
        )
        return list(result.scalars().all())

    async def get(self, key_id: str) -> ApiKey | None:
        """Get a key by ID (internal use, no owner check)."""
        return await self._db.get(ApiKey, key_id)

    async def get_for_user(self, key_id: str, user_id: str) -> ApiKey | None:
        result = await self._db.execute(
            select(ApiKey).where(ApiKey.id == key_id, ApiKey.user_id == user_id)
        )
        return result.scalars().first()

    async def save(self, record: ApiKey) -> ApiKey:
        """Insert a key, or touch it if (hashed_value, user_id) already exists.

        On conflict only `last_used_at` and `updated_at` move forward; the
        stored hash and owner are never rewritten here.

        Returns:
            The persisted record
        """
        result = await self._db.execute(
            select(ApiKey).where(
                ApiKey.hashed_value == record.hashed_value,
                ApiKey.user_id == record.user_id,
            )
        )
        existing = result.scalars().first()

        now = utcnow()
        if existing is None:
            self._db.add(record)
            await self._db.flush()
            await self._db.refresh(record)
            return record

        existing.last_used_at = max(now, as_utc(existing.last_used_at))
        existing.updated_at = now
        self._db.add(existing)
        await self._db.flush()
        return existing

    async def delete(self, record: ApiKey) -> None:
        await self._db.delete(record)
        await self._db.flush()
        self._log.info("api_key.deleted", key_id=record.id, user_id=record.user_id)

    async def transfer(self, old_user_id: str, new_user_id: str) -> int:
        """Move every key of one user to another.

        Only used when a scratch sign-in user collapses into an existing
        account; keys must never change owner in any other context.

        Returns:
            Number of keys transferred
        """
        result = await self._db.execute(
            update(ApiKey)
            .where(ApiKey.user_id == old_user_id)
            .values(user_id=new_user_id, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        await self._db.flush()

        count = result.rowcount or 0
        self._log.info(
            "api_key.transferred",
            old_user_id=old_user_id,
            new_user_id=new_user_id,
            count=count,
        )
        return count
