"""
Onboarding resolver — map an authenticated identity to its membership,
provisioning a new organization on first contact.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.core.database import Backend
from app.core.errors import InternalError, ProvisioningFailure
from app.core.events import ChangePublisher
from app.models.member import Member
from app.models.organization import Organization
from app.services import members as member_service
from sprintforge_shared.schemas.common import ChangeEvent
from sprintforge_shared.schemas.onboarding import Identity

log = structlog.get_logger()

MAX_PROVISION_ATTEMPTS = 3


@dataclass
class OnboardingResult:
    member: Member
    organization: Optional[Organization]
    is_new_user: bool


class OnboardingResolver:
    """
    Resolves an identity to exactly one active membership.

    Lookup and profile refresh run under the caller's restricted credentials.
    Provisioning runs in a privileged session as one transaction; losing a
    first-contact race to another request (unique email violation) rolls it
    back and the resolver starts over from the lookup.
    """

    def __init__(self, backend: Backend, publish: Optional[ChangePublisher] = None):
        self.backend = backend
        self.publish = publish

    async def resolve(self, identity: Identity) -> OnboardingResult:
        last_conflict: Optional[IntegrityError] = None

        for attempt in range(1, MAX_PROVISION_ATTEMPTS + 1):
            existing = await self._refresh_existing(identity)
            if existing is not None:
                return existing

            try:
                return await self._provision(identity)
            except IntegrityError as exc:
                last_conflict = exc
                log.warning(
                    "onboarding.provision_conflict",
                    email=identity.email,
                    attempt=attempt,
                )

        raise ProvisioningFailure(
            f"membership for {identity.email!r} still conflicting after "
            f"{MAX_PROVISION_ATTEMPTS} attempts",
            cause=last_conflict,
        )

    async def _refresh_existing(self, identity: Identity) -> Optional[OnboardingResult]:
        try:
            async with self.backend.restricted_session(identity.email) as session:
                member = await member_service.find_active_member(identity.email, session)
                if member is None:
                    return None
                changed = await member_service.refresh_profile(
                    member, identity.user_metadata, session
                )
        except SQLAlchemyError as exc:
            raise InternalError("membership lookup or refresh failed", cause=exc) from exc

        if changed:
            log.info("onboarding.member_refreshed", member_id=str(member.id))
            await self._announce("members", ChangeEvent.UPDATE, member)
        return OnboardingResult(member=member, organization=None, is_new_user=False)

    async def _provision(self, identity: Identity) -> OnboardingResult:
        try:
            async with self.backend.privileged_session() as session:
                org, member = await member_service.create_organization_with_admin(
                    identity, session
                )
        except IntegrityError as exc:
            if _is_email_conflict(exc):
                raise
            raise ProvisioningFailure("organization provisioning failed", cause=exc) from exc
        except SQLAlchemyError as exc:
            raise ProvisioningFailure("organization provisioning failed", cause=exc) from exc

        log.info(
            "onboarding.org_provisioned",
            org_id=str(org.id),
            member_id=str(member.id),
        )
        await self._announce("organizations", ChangeEvent.INSERT, org)
        await self._announce("members", ChangeEvent.INSERT, member)
        return OnboardingResult(member=member, organization=org, is_new_user=True)

    async def _announce(
        self, table: str, event_type: ChangeEvent, row: Organization | Member
    ) -> None:
        if self.publish is None:
            return
        try:
            await self.publish(table, event_type, new=row.model_dump(mode="json"))
        except Exception:
            log.exception("onboarding.publish_failed", table=table, event=event_type.value)


def _is_email_conflict(exc: IntegrityError) -> bool:
    message = str(exc.orig).lower()
    return "uq_members_active_email" in message or "members.email" in message
