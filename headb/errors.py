"""headb error types.

Error codes are stable strings for programmatic handling. Every error raised
past a service boundary is a HeadbError subclass and is rendered by the
FastAPI exception handler in ``headb.main``.
"""

from __future__ import annotations

from typing import Any


class HeadbError(Exception):
    """Base error for all headb exceptions."""

    code: str = "internal"
    message: str = "An internal error occurred"
    status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self, request_id: str | None = None) -> dict[str, Any]:
        """Render the error envelope returned to API clients."""
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "request_id": request_id,
        }
        if self.details:
            error["details"] = self.details
        return {"error": error}


class InvalidArgumentError(HeadbError):
    """Malformed input: bad bearer, unknown role or operation (400)."""

    code = "invalid_argument"
    message = "Invalid argument"
    status_code = 400


class UnauthenticatedError(HeadbError):
    """Caller could not be authenticated (401)."""

    code = "unauthenticated"
    message = "Could not authenticate with the given API key"
    status_code = 401


class PermissionDeniedError(HeadbError):
    """Authenticated caller lacks the required role (403)."""

    code = "permission_denied"
    message = "Permission denied"
    status_code = 403


class NotFoundError(HeadbError):
    """Resource not found (404)."""

    code = "not_found"
    message = "Resource not found"
    status_code = 404


class AlreadyExistsError(HeadbError):
    """Uniqueness violation (409)."""

    code = "already_exists"
    message = "Resource already exists"
    status_code = 409


class InternalError(HeadbError):
    """Storage failure or unexpected provider failure (500)."""

    code = "internal"
    message = "An internal error occurred"
    status_code = 500
