"""
Membership management endpoints.

GET    /api/organizations/members            — List active members
POST   /api/organizations/members            — Invite a member (admin)
PUT    /api/organizations/members            — Change a member's role (admin)
DELETE /api/organizations/members/{memberId} — Remove a member (admin)
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Response

from app.core.auth import CurrentMember, require_admin, require_member
from app.core.database import Backend, get_backend
from app.services import members as member_service
from sprintforge_shared.schemas.members import (
    MemberInviteRequest,
    MemberListResponse,
    MemberResponse,
    MemberRoleUpdateRequest,
)

router = APIRouter()


@router.get("", response_model=MemberListResponse)
async def list_members(
    current: CurrentMember = Depends(require_member),
    backend: Backend = Depends(get_backend),
):
    async with backend.restricted_session(current.identity.email) as session:
        members = await member_service.list_active_members(current.org_id, session)
    return MemberListResponse(
        members=[MemberResponse.model_validate(m) for m in members],
        current_user_role=current.role,
    )


@router.post("", response_model=MemberResponse, status_code=201)
async def invite_member(
    body: MemberInviteRequest,
    current: CurrentMember = Depends(require_admin),
    backend: Backend = Depends(get_backend),
):
    """Add a membership for an email that has no active membership anywhere."""
    # Existing memberships in other orgs are invisible under RLS
    async with backend.privileged_session() as session:
        member = await member_service.invite_member(current.org_id, body, session)
    return MemberResponse.model_validate(member)


@router.put("", response_model=MemberResponse)
async def update_member_role(
    body: MemberRoleUpdateRequest,
    current: CurrentMember = Depends(require_admin),
    backend: Backend = Depends(get_backend),
):
    async with backend.restricted_session(current.identity.email) as session:
        member = await member_service.update_member_role(
            current.org_id, current.member_id, body, session
        )
    return MemberResponse.model_validate(member)


@router.delete("/{memberId}", status_code=204)
async def remove_member(
    memberId: uuid.UUID,
    current: CurrentMember = Depends(require_admin),
    backend: Backend = Depends(get_backend),
):
    """Soft-delete a membership in the caller's organization."""
    async with backend.restricted_session(current.identity.email) as session:
        await member_service.remove_member(current.org_id, memberId, session)
    return Response(status_code=204)
