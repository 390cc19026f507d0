"""Database ownership record.

Only the columns the permission store needs to check ownership. Collections,
documents and their CRUD live in the content service.
"""

import uuid
from datetime import datetime

from sqlmodel import Field, SQLModel

from headb.utils.datetime import utcnow


class Database(SQLModel, table=True):
    """A user's JSON document database."""

    __tablename__ = "databases"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    name: str = Field()
    user_id: str = Field(index=True)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
