"""Identity API endpoints: sign-in, caller identity and API keys."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Response
from pydantic import BaseModel

from headb.api.dependencies import AuthDep, IdentityServiceDep

router = APIRouter()


# Request/Response Models


class SignInResponse(BaseModel):
    message: str
    api_key: str
    user_code: str
    verification_uri: str
    expires_in: int


class MeResponse(BaseModel):
    user_id: str
    key_id: str
    username: str | None


class CreateApiKeyRequest(BaseModel):
    """Request to issue a new API key.

    `database_id` scopes the key to one database; without it the key gets a
    global grant over every database of the user.
    """

    role: str
    database_id: str | None = None


class CreateApiKeyResponse(BaseModel):
    message: str
    api_key: str
    key_id: str
    role: str
    database_id: str | None


class ApiKeyItem(BaseModel):
    key_id: str
    last_used_at: datetime
    created_at: datetime


class ApiKeyListResponse(BaseModel):
    message: str
    keys: list[ApiKeyItem]


# Endpoints


@router.post("/sign-in", response_model=SignInResponse)
async def sign_in(identity: IdentityServiceDep) -> SignInResponse:
    """Start a device-flow sign-in and return an admin key right away.

    The key authenticates once the user has authorized the device code.
    """
    result = await identity.sign_in()
    return SignInResponse(
        message=result.message,
        api_key=result.api_key,
        user_code=result.user_code,
        verification_uri=result.verification_uri,
        expires_in=result.expires_in,
    )


@router.get("/me", response_model=MeResponse)
async def me(caller: AuthDep) -> MeResponse:
    return MeResponse(user_id=caller.user_id, key_id=caller.key_id, username=caller.username)


@router.post("/api-keys", response_model=CreateApiKeyResponse, status_code=201)
async def create_api_key(
    request: CreateApiKeyRequest,
    caller: AuthDep,
    identity: IdentityServiceDep,
) -> CreateApiKeyResponse:
    issued = await identity.generate_api_key(caller, request.role, request.database_id)
    return CreateApiKeyResponse(
        message="Save this key somewhere, it will not be available again.",
        api_key=issued.api_key,
        key_id=issued.key_id,
        role=issued.role.value,
        database_id=issued.database_id,
    )


@router.get("/api-keys", response_model=ApiKeyListResponse)
async def list_api_keys(caller: AuthDep, identity: IdentityServiceDep) -> ApiKeyListResponse:
    keys = await identity.list_api_keys(caller)
    return ApiKeyListResponse(
        message=f"Found {len(keys)} API keys",
        keys=[
            ApiKeyItem(key_id=k.key_id, last_used_at=k.last_used_at, created_at=k.created_at)
            for k in keys
        ],
    )


@router.delete("/api-keys/{key_id}", status_code=204)
async def delete_api_key(key_id: str, caller: AuthDep, identity: IdentityServiceDep) -> Response:
    await identity.delete_api_key(caller, key_id)
    return Response(status_code=204)
