"""User data model.

A user row is created before the identity provider has identified the caller
(the scratch user), then promoted to accepted, marked denied, or deleted by
the device-flow poller.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from headb.utils.datetime import utcnow


class UserStatus(str, Enum):
    """User lifecycle status."""

    PENDING = "pending"  # Sign-in started, provider has not answered yet
    ACCEPTED = "accepted"  # Provider authorized the device code
    DENIED = "denied"  # User refused or the device code expired


class User(SQLModel, table=True):
    """User identified through the OAuth provider.

    Only accepted users may authenticate. `token` holds the provider access
    token sealed with the provider token cipher, never the plain value.
    """

    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    username: Optional[str] = Field(default=None)
    token: Optional[str] = Field(default=None)
    external_id: Optional[str] = Field(default=None, unique=True, index=True)
    status: UserStatus = Field(default=UserStatus.PENDING)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def can_authenticate(self) -> bool:
        return self.status == UserStatus.ACCEPTED
