"""
Onboarding endpoint.

POST /api/auth/onboard — Resolve the caller's membership, provisioning an
                         organization on first sign-in
"""

from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.core.auth import get_identity
from app.core.database import Backend, get_backend
from app.core.errors import InternalError
from app.core.events import ChangePublisher, get_change_publisher
from app.services.onboarding import OnboardingResolver
from sprintforge_shared.schemas.members import MemberResponse
from sprintforge_shared.schemas.onboarding import Identity, OnboardResponse
from sprintforge_shared.schemas.organizations import OrganizationResponse

log = structlog.get_logger()

router = APIRouter()


@router.post("/onboard")
async def onboard(
    identity: Identity = Depends(get_identity),
    backend: Backend = Depends(get_backend),
    publish: Optional[ChangePublisher] = Depends(get_change_publisher),
):
    """
    Return the caller's membership, creating an organization and an admin
    membership the first time an identity is seen.

    Responds ``{member, organization?, isNewUser}``. ``organization`` is
    present only when one was just created.
    """
    resolver = OnboardingResolver(backend, publish=publish)
    try:
        result = await resolver.resolve(identity)
    except InternalError:
        raise
    except Exception:
        log.exception("onboarding.unexpected_error", email=identity.email)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    body = OnboardResponse(
        member=MemberResponse.model_validate(result.member),
        organization=(
            OrganizationResponse.model_validate(result.organization)
            if result.organization is not None
            else None
        ),
        is_new_user=result.is_new_user,
    )
    return JSONResponse(status_code=200, content=body.to_body())
