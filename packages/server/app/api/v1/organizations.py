"""
Organization API endpoints.

GET   /api/organizations — The caller's organization
PATCH /api/organizations — Update org name/settings (admin)
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends

from app.core.auth import CurrentMember, require_admin, require_member
from app.core.database import Backend, get_backend
from app.services import organizations as org_service
from sprintforge_shared.schemas.organizations import OrganizationResponse, OrgUpdateRequest

log = structlog.get_logger()

router = APIRouter()


@router.get("", response_model=OrganizationResponse)
async def get_organization(
    current: CurrentMember = Depends(require_member),
    backend: Backend = Depends(get_backend),
):
    """Get the organization the caller belongs to."""
    async with backend.restricted_session(current.identity.email) as session:
        org = await org_service.get_org(current.org_id, session)
    return OrganizationResponse.model_validate(org)


@router.patch("", response_model=OrganizationResponse)
async def update_organization(
    body: OrgUpdateRequest,
    current: CurrentMember = Depends(require_admin),
    backend: Backend = Depends(get_backend),
):
    """
    Update the organization's name and/or settings.

    Settings are deep-merged into the stored bag; ``null`` removes a key.
    """
    async with backend.restricted_session(current.identity.email) as session:
        org = await org_service.get_org(current.org_id, session)
        org = await org_service.update_org(org, body, session)
    return OrganizationResponse.model_validate(org)
