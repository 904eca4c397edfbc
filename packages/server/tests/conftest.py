"""
Shared fixtures: SQLite-backed store, in-process change feed, app + client.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from app import models  # noqa: F401  (registers tables on SQLModel.metadata)
from app.core.auth import SESSION_COOKIE, create_access_token
from app.core.config import BackendConfig
from app.core.database import Backend
from app.core.events import ChangeFeed, get_change_publisher
from app.core.realtime import RealtimeProvider
from app.main import create_app
from app.services.onboarding import OnboardingResolver
from sprintforge_shared.schemas.onboarding import Identity, UserMetadata


@pytest.fixture
async def backend(tmp_path):
    backend = Backend(BackendConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'sprintforge.db'}"))
    await backend.init_db()
    yield backend
    await backend.dispose()


@pytest.fixture
def feed():
    return ChangeFeed(redis_factory=AsyncMock())


@pytest.fixture
def provider(feed):
    return RealtimeProvider(feed)


@pytest.fixture
def publisher():
    """Recording change publisher."""
    return AsyncMock(return_value={})


@pytest.fixture
def test_app(backend, provider, publisher):
    application = create_app()
    application.state.backend = backend
    application.state.realtime = provider
    application.dependency_overrides[get_change_publisher] = lambda: publisher
    return application


@pytest.fixture
async def client(test_app):
    async with AsyncClient(transport=ASGITransport(app=test_app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_identity():
    def _make(email: str, **metadata) -> Identity:
        return Identity(email=email, user_metadata=UserMetadata(**metadata))

    return _make


@pytest.fixture
def onboard(backend, make_identity):
    """Onboard an identity directly through the resolver."""

    async def _onboard(email: str, **metadata):
        return await OnboardingResolver(backend).resolve(make_identity(email, **metadata))

    return _onboard


@pytest.fixture
def auth_headers():
    def _headers(email: str, **metadata) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(email, metadata)}"}

    return _headers


@pytest.fixture
def session_cookie():
    def _cookie(email: str, **metadata) -> dict[str, str]:
        return {SESSION_COOKIE: create_access_token(email, metadata)}

    return _cookie
