"""
Onboard an identity and print an access token for it (local development).

    python -m app.scripts.dev_session ann@example.com --full-name Ann --user-name ann
"""

from __future__ import annotations

import argparse
import asyncio

from app.core.auth import create_access_token
from app.core.config import get_settings
from app.core.database import Backend
from app.core.log import configure_logging
from app.services.onboarding import OnboardingResolver, OnboardingResult
from sprintforge_shared.schemas.onboarding import Identity, UserMetadata


async def issue_dev_session(
    backend: Backend, email: str, metadata: dict[str, str]
) -> tuple[OnboardingResult, str]:
    """Resolve (or provision) the membership and mint a matching token."""
    identity = Identity(email=email, user_metadata=UserMetadata.model_validate(metadata))
    result = await OnboardingResolver(backend).resolve(identity)
    return result, create_access_token(email, metadata)


async def _run(args: argparse.Namespace) -> None:
    settings = get_settings()
    configure_logging(settings.log_level, "text")
    backend = Backend(settings.backend_config())
    metadata = {
        key: value
        for key, value in {
            "full_name": args.full_name,
            "user_name": args.user_name,
            "avatar_url": args.avatar_url,
        }.items()
        if value
    }
    try:
        if args.create_tables:
            await backend.init_db()
        result, token = await issue_dev_session(backend, args.email, metadata)
    finally:
        await backend.dispose()

    state = "created" if result.is_new_user else "existing"
    print(f"Member {result.member.email} ({result.member.role}, {state}) in org {result.member.org_id}")
    print(f"Authorization: Bearer {token}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Onboard an identity and print an access token")
    parser.add_argument("email")
    parser.add_argument("--full-name")
    parser.add_argument("--user-name")
    parser.add_argument("--avatar-url")
    parser.add_argument(
        "--create-tables", action="store_true",
        help="Create tables from models first (SQLite / throwaway databases only)",
    )
    asyncio.run(_run(parser.parse_args()))


if __name__ == "__main__":
    main()
