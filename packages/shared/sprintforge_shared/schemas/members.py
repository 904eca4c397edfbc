"""Membership schemas."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, field_validator

from .common import Role, normalize_email


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class MemberInviteRequest(BaseModel):
    """Invite someone into the caller's org."""
    email: EmailStr
    role: Role = Role.MEMBER

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return normalize_email(value)


class MemberRoleUpdateRequest(BaseModel):
    member_id: uuid.UUID
    role: Role


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class MemberResponse(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    email: str
    github_login: Optional[str] = None
    github_id: Optional[str] = None
    avatar_url: Optional[str] = None
    role: Role
    created_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class MemberListResponse(BaseModel):
    members: List[MemberResponse]
    current_user_role: Role
