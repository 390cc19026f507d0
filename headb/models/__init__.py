"""SQLModel data models."""

from headb.models.api_key import ApiKey
from headb.models.database import Database
from headb.models.permission import Permission, Role
from headb.models.user import User, UserStatus

__all__ = [
    "ApiKey",
    "Database",
    "Permission",
    "Role",
    "User",
    "UserStatus",
]
