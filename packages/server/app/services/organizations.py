"""
Organization service — read and update the caller's org.
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.models.organization import Organization
from sprintforge_shared.schemas.organizations import OrgSettings, OrgUpdateRequest

log = structlog.get_logger()


def _deep_merge(base: dict, patch: dict) -> dict:
    """JSON Merge Patch style deep merge. ``None`` values delete keys."""
    result = base.copy()
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


async def get_org(org_id: uuid.UUID, session: AsyncSession) -> Organization:
    """Get an org by id; raises 404 if not found or deleted."""
    result = await session.execute(
        select(Organization).where(
            Organization.id == org_id,
            Organization.deleted_at.is_(None),
        )
    )
    org = result.scalar_one_or_none()
    if not org:
        raise HTTPException(status_code=404, detail="Organization not found")
    return org


async def update_org(
    org: Organization,
    req: OrgUpdateRequest,
    session: AsyncSession,
) -> Organization:
    """Update org name and/or settings (deep merge)."""
    if req.name is not None:
        org.name = req.name

    if req.settings is not None:
        merged = _deep_merge(org.settings or {}, req.settings)
        try:
            OrgSettings.model_validate(merged)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid settings: {exc}")
        # Reassign so the JSON column is marked dirty
        org.settings = merged

    session.add(org)
    await session.flush()
    await session.refresh(org)

    log.info("org.updated", org_id=str(org.id))
    return org
