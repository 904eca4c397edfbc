"""
Database connection and session management.

The store is reached in two credential modes. Restricted sessions assume the
policy-enforced role and publish the caller's claims so row-level security
can evaluate them; privileged sessions assume the role that bypasses policy.
On non-PostgreSQL engines (tests) role switching is skipped.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from app.core.config import BackendConfig, get_settings


class Backend:
    """Engine plus session factories for both credential modes."""

    def __init__(self, config: BackendConfig):
        self.config = config
        self.engine = create_async_engine(config.url, echo=config.echo, future=True)
        self._session_factory = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @property
    def enforces_roles(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    async def init_db(self) -> None:
        """Create all tables (development and tests only; use migrations in production)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def _assume_role(
        self, session: AsyncSession, role: str, claims: dict[str, Any] | None = None
    ) -> None:
        if not self.enforces_roles:
            return
        # Role names are validated as identifiers by BackendConfig
        await session.execute(text(f"SET LOCAL ROLE {role}"))
        if claims is not None:
            await session.execute(
                text("SELECT set_config('request.jwt.claims', :claims, true)"),
                {"claims": json.dumps(claims)},
            )

    @asynccontextmanager
    async def restricted_session(self, email: str) -> AsyncGenerator[AsyncSession, None]:
        """Policy-enforced session acting as the user identified by ``email``."""
        async with self._session_factory() as session:
            try:
                await self._assume_role(
                    session, self.config.restricted_role, claims={"email": email}
                )
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def privileged_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Policy-bypassing session. Used only for provisioning."""
        async with self._session_factory() as session:
            try:
                await self._assume_role(session, self.config.privileged_role)
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


@lru_cache
def _default_backend() -> Backend:
    return Backend(get_settings().backend_config())


def get_backend(request: Request) -> Backend:
    """FastAPI dependency: the backend attached at startup, or the default one."""
    backend = getattr(request.app.state, "backend", None)
    if backend is None:
        backend = _default_backend()
    return backend
