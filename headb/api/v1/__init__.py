"""API v1 router."""

from fastapi import APIRouter

from headb.api.v1.identity import router as identity_router
from headb.api.v1.permissions import router as permissions_router

router = APIRouter()

# Include sub-routers
router.include_router(identity_router, tags=["identity"])
router.include_router(permissions_router, prefix="/permissions", tags=["permissions"])
