"""Shared test fixtures: in-memory SQLite engine, sessions, test client, users."""

from __future__ import annotations

import itertools
import os

# Settings are cached on first use; point them at SQLite before any import.
os.environ.setdefault("LABQ_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LABQ_REDIS_URL", "")
os.environ.setdefault("LABQ_LOG_FORMAT", "console")
os.environ.setdefault("LABQ_SEED_DEFAULTS", "false")

from collections.abc import AsyncGenerator, Awaitable, Callable  # noqa: E402

import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from labquest.db.base import Base  # noqa: E402
from labquest.db.models import User, UserGamification  # noqa: E402
from labquest.dependencies import get_db  # noqa: E402
from labquest.gamification.timeutils import utcnow  # noqa: E402
from labquest.main import create_app  # noqa: E402

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

_emails = itertools.count(1)


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test, schema built from the ORM metadata."""
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Direct database session for service calls and assertions."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the database dependency overridden."""
    app = create_app()

    async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def make_user(db_session: AsyncSession) -> Callable[..., Awaitable[User]]:
    """Factory creating a committed user, optionally with a starting balance."""

    async def _make(
        name: str = "Ana",
        roles: list[str] | None = None,
        week_hours: float = 0,
        points: int = 0,
        coins: int = 0,
        archetype: str | None = None,
    ) -> User:
        user = User(
            name=name,
            email=f"{name.lower()}-{next(_emails)}@lab.test",
            roles=roles or [],
            week_hours=week_hours,
            is_active=True,
        )
        db_session.add(user)
        await db_session.flush()
        db_session.add(UserGamification(
            user_id=user.id,
            points=points,
            coins=coins,
            trophies=0,
            archetype=archetype,
            updated_at=utcnow(),
        ))
        await db_session.commit()
        return user

    return _make
