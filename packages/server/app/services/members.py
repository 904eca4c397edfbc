"""
Membership service — lookups, onboarding writes, and admin member management.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.errors import LookupAmbiguity
from app.models.member import Member
from app.models.organization import Organization
from sprintforge_shared.schemas.common import Role
from sprintforge_shared.schemas.members import (
    MemberInviteRequest,
    MemberRoleUpdateRequest,
)
from sprintforge_shared.schemas.onboarding import Identity, UserMetadata
from sprintforge_shared.schemas.organizations import DEFAULT_TIMEZONE

log = structlog.get_logger()

# Member columns refreshed from provider metadata on every onboarding call
PROFILE_FIELDS: dict[str, str] = {
    "github_login": "user_name",
    "github_id": "provider_id",
    "avatar_url": "avatar_url",
}


def _active():
    return Member.deleted_at.is_(None)


async def find_active_member(email: str, session: AsyncSession) -> Optional[Member]:
    """Return the non-soft-deleted membership for ``email``, if any."""
    result = await session.execute(select(Member).where(Member.email == email, _active()))
    rows = result.scalars().all()
    if len(rows) > 1:
        raise LookupAmbiguity(f"{len(rows)} active memberships match {email!r}")
    return rows[0] if rows else None


def profile_from_metadata(metadata: UserMetadata) -> dict[str, str]:
    """Profile columns present in the metadata. Absent fields are not included."""
    values = {}
    for column, key in PROFILE_FIELDS.items():
        value = getattr(metadata, key)
        if value is not None:
            values[column] = value
    return values


async def refresh_profile(
    member: Member, metadata: UserMetadata, session: AsyncSession
) -> bool:
    """Copy the latest provider metadata onto ``member``. Returns True if anything changed."""
    changed = False
    for column, value in profile_from_metadata(metadata).items():
        if getattr(member, column) != value:
            setattr(member, column, value)
            changed = True
    if changed:
        session.add(member)
        await session.flush()
        await session.refresh(member)
    return changed


def default_org_name(identity: Identity) -> str:
    return f"{identity.user_metadata.full_name or identity.email}'s Team"


async def create_organization_with_admin(
    identity: Identity, session: AsyncSession
) -> tuple[Organization, Member]:
    """Create an org and its first (admin) membership.

    Both rows are written in the caller's transaction, so they commit or roll
    back together.
    """
    org = Organization(
        name=default_org_name(identity),
        settings={"timezone": DEFAULT_TIMEZONE},
    )
    session.add(org)
    await session.flush()

    member = Member(
        org_id=org.id,
        email=identity.email,
        role=Role.ADMIN.value,
        **profile_from_metadata(identity.user_metadata),
    )
    session.add(member)
    await session.flush()
    await session.refresh(org)
    await session.refresh(member)
    return org, member


# ---------------------------------------------------------------------------
# Admin member management
# ---------------------------------------------------------------------------

async def list_active_members(org_id: uuid.UUID, session: AsyncSession) -> list[Member]:
    result = await session.execute(
        select(Member)
        .where(Member.org_id == org_id, _active())
        .order_by(Member.created_at)
    )
    return list(result.scalars().all())


async def _count_admins(org_id: uuid.UUID, session: AsyncSession) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(Member)
        .where(Member.org_id == org_id, Member.role == Role.ADMIN.value, _active())
    )
    return result.scalar_one()


async def _get_org_member(
    org_id: uuid.UUID, member_id: uuid.UUID, session: AsyncSession
) -> Member:
    result = await session.execute(select(Member).where(Member.id == member_id, _active()))
    member = result.scalar_one_or_none()
    if not member:
        raise HTTPException(status_code=404, detail="Target member not found")
    if member.org_id != org_id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return member


async def invite_member(
    org_id: uuid.UUID, req: MemberInviteRequest, session: AsyncSession
) -> Member:
    """Add a membership for an email that has none yet."""
    existing = await find_active_member(req.email, session)
    if existing is not None:
        if existing.org_id == org_id:
            raise HTTPException(status_code=409, detail="Member already exists in organization")
        raise HTTPException(
            status_code=409, detail="Email already belongs to another organization"
        )

    member = Member(org_id=org_id, email=req.email, role=req.role.value)
    session.add(member)
    try:
        await session.flush()
    except IntegrityError as exc:
        # Lost a race with a concurrent invite or first-contact onboarding
        raise HTTPException(
            status_code=409, detail="Email already belongs to an organization"
        ) from exc
    await session.refresh(member)
    log.info("member.invited", member_id=str(member.id), org_id=str(org_id), role=member.role)
    return member


async def update_member_role(
    org_id: uuid.UUID,
    caller_id: uuid.UUID,
    req: MemberRoleUpdateRequest,
    session: AsyncSession,
) -> Member:
    """Change a member's role. The org must keep at least one admin."""
    member = await _get_org_member(org_id, req.member_id, session)
    if (
        member.role == Role.ADMIN.value
        and req.role != Role.ADMIN
        and await _count_admins(org_id, session) <= 1
    ):
        raise HTTPException(
            status_code=400, detail="Cannot remove the last admin from organization"
        )

    member.role = req.role.value
    session.add(member)
    await session.flush()
    log.info(
        "member.role_changed",
        member_id=str(member.id),
        org_id=str(org_id),
        role=member.role,
        by=str(caller_id),
    )
    return member


async def remove_member(
    org_id: uuid.UUID, member_id: uuid.UUID, session: AsyncSession
) -> Member:
    """Soft-delete a membership. The org must keep at least one admin."""
    member = await _get_org_member(org_id, member_id, session)
    if member.role == Role.ADMIN.value and await _count_admins(org_id, session) <= 1:
        raise HTTPException(
            status_code=400, detail="Cannot remove the last admin from organization"
        )

    member.deleted_at = datetime.now(timezone.utc)
    session.add(member)
    await session.flush()
    log.info("member.removed", member_id=str(member_id), org_id=str(org_id))
    return member
