"""
Organization-related Pydantic schemas shared between server and clients.

Covers: org settings bag, org read/update payloads.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_TIMEZONE = "America/New_York"


# ---------------------------------------------------------------------------
# Org Settings
# ---------------------------------------------------------------------------

class FeatureFlags(BaseModel):
    notion_export: bool = False
    jira_integration: bool = False
    advanced_pr_scoring: bool = False


class OrgSettings(BaseModel):
    """Open settings bag. Known keys are typed; unknown keys are preserved."""

    model_config = ConfigDict(extra="allow")

    timezone: str = Field(default=DEFAULT_TIMEZONE, min_length=1)
    slack_webhook_url: Optional[str] = Field(
        default=None,
        pattern=r"^https://hooks\.slack\.com/",
        description="Default Slack incoming webhook",
    )
    github_org: Optional[str] = None
    feature_flags: FeatureFlags = Field(default_factory=FeatureFlags)


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class OrgUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    settings: Optional[dict] = Field(
        None,
        description="Partial settings update (deep-merged via JSON Merge Patch)",
    )


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class OrganizationResponse(BaseModel):
    id: uuid.UUID
    name: str
    settings: dict
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
