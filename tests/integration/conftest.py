"""Shared fixtures for integration tests requiring live infrastructure."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from joinery.config import get_settings
from joinery.storage.credential_store import SqlCredentialStore
from joinery.storage.orm import User

# ── Engine (module-scoped, shared across test module) ──────────────


@pytest.fixture(scope="module")
async def async_engine() -> AsyncGenerator[AsyncEngine]:
    """Create an async engine from settings (module-scoped)."""
    engine = create_async_engine(
        get_settings().database_url,
        pool_size=5,
        max_overflow=0,
    )
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(
    async_engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture()
def sql_store(
    session_factory: async_sessionmaker[AsyncSession],
) -> SqlCredentialStore:
    return SqlCredentialStore(session_factory)


# ── Committed seeds (real commit + DELETE cleanup) ─────────────────


@pytest.fixture()
async def committed_user(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[User]:
    """Create a committed User; its credentials cascade on cleanup."""
    suffix = uuid.uuid4().hex[:8]
    async with session_factory() as session:
        user = User(username=f"it-{suffix}", email=f"it-{suffix}@example.com")
        session.add(user)
        await session.commit()

    yield user

    async with session_factory() as session:
        await session.execute(User.__table__.delete().where(User.id == user.id))
        await session.commit()
