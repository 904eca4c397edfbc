"""Membership model (RLS-scoped, soft-deleted)."""

from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import CreatedAtMixin, SoftDeleteMixin, UUIDMixin


class Member(UUIDMixin, CreatedAtMixin, SoftDeleteMixin, SQLModel, table=True):
    __tablename__ = "members"
    __table_args__ = (
        # One active membership per email; soft-deleted rows don't count
        sa.Index(
            "uq_members_active_email",
            "email",
            unique=True,
            postgresql_where=sa.text("deleted_at IS NULL"),
            sqlite_where=sa.text("deleted_at IS NULL"),
        ),
    )

    org_id: uuid.UUID = Field(foreign_key="organizations.id", nullable=False, index=True)
    email: str = Field(nullable=False)
    github_login: Optional[str] = None
    github_id: Optional[str] = None
    avatar_url: Optional[str] = None
    role: str = Field(default="member", nullable=False)  # admin | member
