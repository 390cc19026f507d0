"""headb services layer."""

from headb.services.api_key import ApiKeyService
from headb.services.auth import Authenticator, CallerIdentity
from headb.services.identity import IdentityService, SignInResult
from headb.services.permissions import PermissionService
from headb.services.users import UserService

__all__ = [
    "ApiKeyService",
    "Authenticator",
    "CallerIdentity",
    "IdentityService",
    "PermissionService",
    "SignInResult",
    "UserService",
]
