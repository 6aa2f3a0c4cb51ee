"""Pytest configuration and shared fixtures.

This module provides:
- In-memory SQLite database (aiosqlite + StaticPool) with SAVEPOINT support
- Async session fixtures for repository/service tests
- In-memory ledger for anchoring
- FastAPI test client for route tests
- Seeded users and a default template
"""

# Set environment variables BEFORE any imports that trigger Settings validation
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("RUN_MIGRATIONS_ON_STARTUP", "false")
os.environ.setdefault("ANCHOR_RETRY_ENABLED", "false")

from collections.abc import AsyncGenerator, Generator

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from core.config import Settings, clear_settings_cache
from core.database import Base, enable_sqlite_savepoints
from core.ledger import InMemoryLedger
from models import Template, User, UserRole
from tests.factories import TemplateFactory, UserFactory

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# =============================================================================
# Test Settings
# =============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Settings used by service tests that pass settings explicitly."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        anchor_policy="on_demand",
        anchor_backend="memory",
        anchor_retry_base_delay_seconds=30,
        anchor_retry_max_delay_seconds=600,
        anchor_retry_max_attempts=3,
        serial_prefix="CRT",
    )


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def test_engine() -> AsyncGenerator[AsyncEngine]:
    """Fresh in-memory database per test.

    StaticPool keeps the single in-memory connection alive for the whole test,
    so every session sees the same database.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    enable_sqlite_savepoints(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(
    test_engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Provide a database session for each test.

    Service and repository tests flush without committing; anything left
    uncommitted is rolled back at the end.
    """
    async with session_maker() as session:
        yield session
        await session.rollback()


# =============================================================================
# Seed Data
# =============================================================================


@pytest_asyncio.fixture
async def issuer(db_session: AsyncSession) -> User:
    user = UserFactory.build(role=UserRole.ISSUER, first_name="Ada", last_name="Byron")
    db_session.add(user)
    await db_session.flush()
    return user


@pytest_asyncio.fixture
async def admin(db_session: AsyncSession) -> User:
    user = UserFactory.build(role=UserRole.ADMIN)
    db_session.add(user)
    await db_session.flush()
    return user


@pytest_asyncio.fixture
async def recipient(db_session: AsyncSession) -> User:
    user = UserFactory.build(
        role=UserRole.HOLDER, first_name="Grace", last_name="Hopper"
    )
    db_session.add(user)
    await db_session.flush()
    return user


@pytest_asyncio.fixture
async def default_template(db_session: AsyncSession) -> Template:
    template = TemplateFactory.build(id="classic", version=1, is_default=True)
    db_session.add(template)
    await db_session.flush()
    return template


# =============================================================================
# Ledger Fixtures
# =============================================================================


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


# =============================================================================
# FastAPI Test Client Fixtures
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def app(
    test_engine: AsyncEngine,
    session_maker: async_sessionmaker[AsyncSession],
    ledger: InMemoryLedger,
) -> AsyncGenerator[FastAPI]:
    """FastAPI app wired to the test database and in-memory ledger.

    ASGITransport does not run the lifespan, so state is set here.
    """
    from main import app as fastapi_app

    fastapi_app.state.engine = test_engine
    fastapi_app.state.session_maker = session_maker
    fastapi_app.state.anchor_adapter = ledger
    fastapi_app.state.init_done = True
    fastapi_app.state.init_error = None

    yield fastapi_app


@pytest_asyncio.fixture(scope="function")
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create async HTTP client for testing routes."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# =============================================================================
# Utility Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None]:
    """Reset settings cache before each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
