"""
API Router

Mounted under /api. Org-scoped endpoints resolve the caller's organization
from their active membership.
"""

from fastapi import APIRouter

from . import members, onboarding, organizations, realtime

router = APIRouter()

router.include_router(onboarding.router, prefix="/auth", tags=["Onboarding"])
router.include_router(members.router, prefix="/organizations/members", tags=["Members"])
router.include_router(organizations.router, prefix="/organizations", tags=["Organizations"])
router.include_router(realtime.router, prefix="/realtime", tags=["Realtime"])


@router.get("/", tags=["API"])
async def api_root():
    """API root — returns version and available endpoints."""
    return {
        "api": "sprintforge",
        "version": "0.1.0",
        "endpoints": [
            "/auth/onboard",
            "/organizations",
            "/organizations/members",
            "/realtime/{module}/stream",
        ],
    }
