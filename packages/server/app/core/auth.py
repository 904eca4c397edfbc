"""
Authentication and Authorization for SprintForge.

Sessions are issued by the external auth provider as HS256 access tokens
carrying the user's email and provider metadata. This module:
- Decodes and verifies access tokens (Bearer header or session cookie)
- Turns verified claims into an Identity
- Resolves the caller's active membership for org-scoped endpoints
- Provides role-based authorization dependencies
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt
import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import APIKeyHeader

from app.core.config import get_settings
from app.core.database import Backend, get_backend
from app.core.errors import Unauthorized
from app.models.member import Member
from app.services import members as member_service
from sprintforge_shared.schemas.common import Role
from sprintforge_shared.schemas.onboarding import Identity, UserMetadata

log = structlog.get_logger()

SESSION_COOKIE = "sf_session"
DEFAULT_TOKEN_TTL = timedelta(hours=1)

authorization_header = APIKeyHeader(name="Authorization", auto_error=False)


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------

def create_access_token(
    email: str,
    user_metadata: dict[str, Any] | None = None,
    *,
    subject: uuid.UUID | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Mint an access token in the provider's format (local dev and tests)."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": str(subject or uuid.uuid4()),
        "email": email,
        "user_metadata": user_metadata or {},
        "role": "authenticated",
        "iat": now,
        "exp": now + (expires_delta or DEFAULT_TOKEN_TTL),
    }
    if settings.jwt_audience:
        payload["aud"] = settings.jwt_audience
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict:
    """Decode and verify an access token. Raises jwt.PyJWTError on failure."""
    settings = get_settings()
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience,
        options={"verify_aud": settings.jwt_audience is not None},
    )


def identity_from_claims(claims: dict[str, Any]) -> Identity:
    email = claims.get("email")
    if not email:
        raise Unauthorized("token has no email claim")
    metadata = claims.get("user_metadata") or {}
    return Identity(email=email, user_metadata=UserMetadata.model_validate(metadata))


def _token_from_request(request: Request, authorization: Optional[str]) -> str | None:
    if authorization and authorization.startswith("Bearer "):
        token = authorization[7:].strip()
        if token:
            return token
    return request.cookies.get(SESSION_COOKIE)


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

async def get_identity(
    request: Request,
    authorization: Optional[str] = Depends(authorization_header),
) -> Identity:
    """Main authentication dependency. Bearer header first, then session cookie."""
    token = _token_from_request(request, authorization)
    if not token:
        raise Unauthorized("missing credentials")
    try:
        claims = decode_access_token(token)
    except jwt.PyJWTError as exc:
        raise Unauthorized(f"invalid token: {exc.__class__.__name__}")
    identity = identity_from_claims(claims)
    structlog.contextvars.bind_contextvars(email=identity.email)
    return identity


class CurrentMember:
    """Container for an authenticated identity + their active membership."""

    def __init__(self, identity: Identity, member: Member):
        self.identity = identity
        self.member = member
        self.member_id = member.id
        self.org_id = member.org_id
        self.role = Role(member.role)


async def get_current_member(
    identity: Identity = Depends(get_identity),
    backend: Backend = Depends(get_backend),
) -> CurrentMember:
    """Resolve the caller's active membership; 404 if they have not onboarded."""
    async with backend.restricted_session(identity.email) as session:
        member = await member_service.find_active_member(identity.email, session)
    if member is None:
        raise HTTPException(status_code=404, detail="Member not found")
    return CurrentMember(identity=identity, member=member)


# ---------------------------------------------------------------------------
# Authorization dependencies (role checks)
# ---------------------------------------------------------------------------

async def require_member(
    current: CurrentMember = Depends(get_current_member),
) -> CurrentMember:
    """Any active member can access this endpoint."""
    return current


async def require_admin(
    current: CurrentMember = Depends(get_current_member),
) -> CurrentMember:
    """Requires the admin role."""
    if current.role != Role.ADMIN:
        raise HTTPException(status_code=403, detail="Forbidden")
    return current
