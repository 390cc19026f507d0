"""Permission API endpoints.

All endpoints require a key holding a global admin grant.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query, Response
from pydantic import BaseModel

from headb.api.dependencies import AuthDep, PermissionServiceDep, SessionDep
from headb.errors import NotFoundError
from headb.models.permission import Permission, Role
from headb.services.api_key import ApiKeyService

router = APIRouter()


class CreatePermissionRequest(BaseModel):
    key_id: str
    database_id: str | None = None
    role: str


class PermissionResponse(BaseModel):
    id: str
    key_id: str
    database_id: str | None
    role: str
    created_at: datetime


class CheckPermissionResponse(BaseModel):
    allowed: bool


def _permission_to_response(permission: Permission) -> PermissionResponse:
    return PermissionResponse(
        id=permission.id,
        key_id=permission.key_id,
        database_id=permission.database_id,
        role=permission.role.value,
        created_at=permission.created_at,
    )


async def _require_own_key(session, key_id: str, user_id: str) -> None:
    if await ApiKeyService(session).get_for_user(key_id, user_id) is None:
        raise NotFoundError("API key could not be found", details={"key_id": key_id})


@router.post("", response_model=PermissionResponse, status_code=201)
async def create_permission(
    request: CreatePermissionRequest,
    caller: AuthDep,
    permissions: PermissionServiceDep,
    session: SessionDep,
) -> PermissionResponse:
    await permissions.require(caller.key_id, None, Role.ADMIN)
    await _require_own_key(session, request.key_id, caller.user_id)

    permission = await permissions.add(
        request.key_id,
        request.database_id,
        request.role,
        caller.user_id,
    )
    return _permission_to_response(permission)


@router.delete("/{permission_id}", status_code=204)
async def delete_permission(
    permission_id: str,
    caller: AuthDep,
    permissions: PermissionServiceDep,
    session: SessionDep,
) -> Response:
    await permissions.require(caller.key_id, None, Role.ADMIN)

    permission = await permissions.get(permission_id)
    # Grants of other users' keys are reported as missing
    await _require_own_key(session, permission.key_id, caller.user_id)

    await permissions.remove(permission_id)
    return Response(status_code=204)


@router.get("/check", response_model=CheckPermissionResponse)
async def check_permission(
    caller: AuthDep,
    permissions: PermissionServiceDep,
    session: SessionDep,
    key_id: str = Query(...),
    operation: str = Query(...),
    database_id: str | None = Query(default=None),
) -> CheckPermissionResponse:
    await permissions.require(caller.key_id, None, Role.ADMIN)
    await _require_own_key(session, key_id, caller.user_id)

    allowed = await permissions.can(key_id, database_id, operation)
    return CheckPermissionResponse(allowed=allowed)
