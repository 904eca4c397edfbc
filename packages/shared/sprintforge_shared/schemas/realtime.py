"""
Row types carried by the change feed.

Each table that views subscribe to has an explicit row model; payloads are
decoded into these at the subscription boundary instead of being passed
through as raw dicts.
"""

from __future__ import annotations

import uuid
from datetime import date as Date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import ChangeEvent, Role


class PRStatus(str, Enum):
    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"


class RetroStatus(str, Enum):
    PLANNING = "planning"
    ACTIVE = "active"
    VOTING = "voting"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class RetroColumn(str, Enum):
    WENT_WELL = "went_well"
    WENT_POORLY = "went_poorly"
    IDEAS = "ideas"
    ACTION_ITEMS = "action_items"


class _Row(BaseModel):
    # Feeds may add columns before clients are updated
    model_config = ConfigDict(extra="ignore")


class OrganizationRow(_Row):
    id: uuid.UUID
    name: str
    settings: dict = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class MemberRow(_Row):
    id: uuid.UUID
    org_id: uuid.UUID
    email: str
    github_login: Optional[str] = None
    github_id: Optional[str] = None
    avatar_url: Optional[str] = None
    role: Role = Role.MEMBER
    deleted_at: Optional[datetime] = None


class PRInsightRow(_Row):
    id: uuid.UUID
    org_id: uuid.UUID
    repo: str
    number: int
    author_member_id: Optional[uuid.UUID] = None
    additions: int = 0
    deletions: int = 0
    files_changed: int = 0
    tests_changed: int = 0
    touched_paths: list[str] = Field(default_factory=list)
    size_score: float = 0.0
    risk_score: float = 0.0
    suggested_reviewers: list[str] = Field(default_factory=list)
    status: PRStatus = PRStatus.OPEN
    opened_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StandupRow(_Row):
    id: uuid.UUID
    org_id: uuid.UUID
    member_id: uuid.UUID
    date: Date
    yesterday: list[str] = Field(default_factory=list)
    today: list[str] = Field(default_factory=list)
    blockers: list[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None


class ArcadeRunRow(_Row):
    id: uuid.UUID
    org_id: Optional[uuid.UUID] = None
    level_id: uuid.UUID
    member_id: uuid.UUID
    passed: bool = False
    duration_ms: int = 0
    points_awarded: int = 0
    test_output: str = ""
    created_at: Optional[datetime] = None


class RetroRow(_Row):
    id: uuid.UUID
    org_id: uuid.UUID
    title: str
    sprint: Optional[str] = None
    status: RetroStatus = RetroStatus.PLANNING
    created_by: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None


class RetroNoteRow(_Row):
    id: uuid.UUID
    retro_id: uuid.UUID
    author_member_id: Optional[uuid.UUID] = None
    column_key: RetroColumn
    text: str
    color: str = "#fbbf24"
    votes: int = 0
    is_anonymous: bool = False
    created_at: Optional[datetime] = None


ROW_TYPES: dict[str, type[_Row]] = {
    "organizations": OrganizationRow,
    "members": MemberRow,
    "pr_insights": PRInsightRow,
    "standups": StandupRow,
    "arcade_runs": ArcadeRunRow,
    "retros": RetroRow,
    "retro_notes": RetroNoteRow,
}


class ChangePayload(BaseModel):
    """A row change as delivered by the change feed."""

    schema_: str = Field(default="public", alias="schema")
    table: str
    type: ChangeEvent
    new: dict[str, Any] = Field(default_factory=dict)
    old: dict[str, Any] = Field(default_factory=dict)
    commit_timestamp: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True)


def decode_row(table: str, data: dict[str, Any]) -> BaseModel:
    """Decode a raw row dict into the typed row model for ``table``.

    Raises KeyError for tables without a row model and
    pydantic.ValidationError for malformed rows.
    """
    return ROW_TYPES[table].model_validate(data)
