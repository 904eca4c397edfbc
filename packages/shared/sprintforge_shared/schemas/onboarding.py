"""Identity and onboarding payloads."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .common import normalize_email
from .members import MemberResponse
from .organizations import OrganizationResponse


class UserMetadata(BaseModel):
    """Provider metadata attached to an access token."""

    model_config = ConfigDict(extra="ignore")

    full_name: Optional[str] = None
    user_name: Optional[str] = None
    provider_id: Optional[str] = None
    avatar_url: Optional[str] = None

    @field_validator("provider_id", mode="before")
    @classmethod
    def _coerce_provider_id(cls, value):
        # GitHub ids arrive as integers from some providers
        if value is None:
            return None
        return str(value)


class Identity(BaseModel):
    """An authenticated principal, as supplied per request."""

    email: str = Field(min_length=1)
    user_metadata: UserMetadata = Field(default_factory=UserMetadata)

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value):
        return normalize_email(value) if isinstance(value, str) else value


class OnboardResponse(BaseModel):
    member: MemberResponse
    organization: Optional[OrganizationResponse] = None
    is_new_user: bool = Field(serialization_alias="isNewUser")

    def to_body(self) -> dict:
        body = {
            "member": self.member.model_dump(mode="json"),
            "isNewUser": self.is_new_user,
        }
        if self.organization is not None:
            body["organization"] = self.organization.model_dump(mode="json")
        return body
