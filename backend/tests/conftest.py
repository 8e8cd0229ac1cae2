"""
Test Configuration

This module contains shared fixtures and configuration for tests.

Tests run against a throwaway SQLite database per test unless
TEST_DATABASE_URL points at another async database.
"""

import os
from pathlib import Path
from typing import AsyncGenerator, Awaitable, Callable, List, Sequence

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from usersegments.core.settings import (
    AppConfig,
    AppSettings,
    DatabaseConfig,
    LoggingConfig,
    MonitoringConfig,
    ReportConfig,
    SegmentConfig,
)
from usersegments.db.base import Base
from usersegments.main import create_application
from usersegments.models.user import User

TEST_PUBLIC_URL = "http://reports.test"

UserFactory = Callable[..., Awaitable[List[int]]]


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Per-test database URL."""
    return os.environ.get(
        "TEST_DATABASE_URL",
        f"sqlite+aiosqlite:///{tmp_path / 'usersegments.db'}"
    )


@pytest.fixture
def test_settings(tmp_path: Path, database_url: str) -> AppSettings:
    """Application settings isolated from the environment."""
    return AppSettings(
        app=AppConfig(ENVIRONMENT="test", REQUEST_TIMEOUT=10),
        db=DatabaseConfig(URL=database_url),
        segments=SegmentConfig(TTL_SWEEPER_ENABLED=False, TTL_CHECK_INTERVAL=0.05),
        reports=ReportConfig(STORAGE_DIR=tmp_path / "reports", PUBLIC_URL=TEST_PUBLIC_URL),
        logging=LoggingConfig(JSON_LOGS=False, LEVEL="DEBUG"),
        monitoring=MonitoringConfig(ENABLE_METRICS=True),
    )


async def _reset_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
async def test_engine(database_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Create test database engine."""
    engine = create_async_engine(database_url)
    await _reset_schema(engine)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession]
) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_users(test_db: AsyncSession) -> UserFactory:
    """
    Insert users into the externally owned users table.

    Returns the ids, active users first.
    """
    async def _make_users(count: int, inactive: int = 0, start_id: int = 1) -> List[int]:
        ids = list(range(start_id, start_id + count + inactive))
        for position, user_id in enumerate(ids):
            test_db.add(User(id=user_id, is_active=position < count))
        await test_db.commit()
        return ids

    return _make_users


@pytest.fixture
async def test_app(test_settings: AppSettings) -> AsyncGenerator[FastAPI, None]:
    """Application wired to the test database, lifespan not started."""
    app = create_application(test_settings)
    await _reset_schema(app.state.database.engine)

    yield app

    await app.state.database.dispose()


@pytest.fixture
async def test_client(test_app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create test client."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def seed_app_users(test_app: FastAPI) -> Callable[[Sequence[int]], Awaitable[None]]:
    """Insert active users through the application's own database."""
    async def _seed(user_ids: Sequence[int]) -> None:
        async with test_app.state.database.session() as session:
            for user_id in user_ids:
                session.add(User(id=user_id, is_active=True))
            await session.commit()

    return _seed
