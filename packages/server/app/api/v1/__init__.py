"""
API v1 Router

Org-scoped endpoints are under /orgs/{org_id}; caller-scoped ones under /users.
"""

from fastapi import APIRouter

from . import auth, organizations, users

router = APIRouter()

router.include_router(auth.router, prefix="/auth", tags=["Authentication"])
router.include_router(organizations.router, prefix="/orgs", tags=["Organizations"])
router.include_router(users.router, prefix="/users", tags=["Users"])


@router.get("/", tags=["API"])
async def api_root():
    """API root: version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": ["/auth", "/orgs", "/orgs/{org_id}", "/users"],
    }
