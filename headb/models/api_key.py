"""API Key data model.

Stores bcrypt hashes of key verifiers. The verifier and the bearer built
from it are never stored.
"""

import uuid
from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from headb.utils.datetime import utcnow


class ApiKey(SQLModel, table=True):
    """API key owned by a user.

    The bearer handed to clients seals (key id, verifier); authentication
    looks the row up by id and checks the verifier against `hashed_value`.
    """

    __tablename__ = "api_keys"
    __table_args__ = (
        UniqueConstraint("hashed_value", "user_id", name="api_keys_value_user_id_unique"),
    )

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    hashed_value: str = Field()
    user_id: str = Field(foreign_key="users.id", index=True)

    last_used_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
