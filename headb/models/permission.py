"""Permission data model and role lattice."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from headb.utils.datetime import utcnow


class Role(str, Enum):
    """Grant role, totally ordered admin > write > read.

    The same values name the operations a caller asks permission for.
    """

    ADMIN = "admin"
    WRITE = "write"
    READ = "read"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def satisfies(self, operation: "Role") -> bool:
        """Whether a grant with this role allows `operation`.

        | Grant \\ Operation | admin | write | read |
        |-------------------|-------|-------|------|
        | admin             |   x   |   x   |  x   |
        | write             |       |   x   |  x   |
        | read              |       |       |  x   |
        """
        return self.rank >= operation.rank

    @classmethod
    def parse(cls, value: "str | Role") -> "Role | None":
        """Return the role for `value`, or None when it is not a known role."""
        try:
            return cls(value)
        except ValueError:
            return None


_ROLE_RANK: dict[Role, int] = {
    Role.READ: 1,
    Role.WRITE: 2,
    Role.ADMIN: 3,
}


class Permission(SQLModel, table=True):
    """Role granted to an API key.

    `database_id = None` is a global grant: it applies to every database
    owned by the key's user.
    """

    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint("key_id", "database_id", name="permissions_key_id_database_id_unique"),
    )

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    key_id: str = Field(index=True)
    database_id: Optional[str] = Field(default=None, index=True)
    role: Role = Field()

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
