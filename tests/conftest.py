"""
Pytest configuration and shared fixtures.

Tests run against a throwaway SQLite database per test (aiosqlite), created
from the ORM metadata.
"""

from collections.abc import AsyncGenerator, Generator
from pathlib import Path
from uuid import uuid4

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from analysis_queue.config import Settings, get_settings
from analysis_queue.db import (
    close_db,
    create_engine_for_url,
    create_schema,
    create_session_factory,
    init_db,
)
from analysis_queue.db.repository import JobRepository


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """SQLite database file unique to the test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}"


@pytest.fixture
def settings_env(monkeypatch: pytest.MonkeyPatch) -> Generator[pytest.MonkeyPatch]:
    """
    Set environment-backed settings for a test.

    Use settings_env.setenv(...) and the cached settings are rebuilt.
    """
    get_settings.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()


@pytest.fixture
def fast_retry(settings_env: pytest.MonkeyPatch) -> None:
    """Retry immediately (no backoff, no jitter)."""
    settings_env.setenv("BACKOFF_BASE_SECONDS", "0")
    settings_env.setenv("BACKOFF_JITTER_SECONDS", "0")
    get_settings.cache_clear()


@pytest.fixture
def test_settings() -> Settings:
    """Settings with zero backoff for repository-level tests."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        log_level="DEBUG",
        log_format="console",
        worker_lease_duration_seconds=30,
        backoff_base_seconds=0,
        backoff_jitter_seconds=0,
    )


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async engine with the schema in place."""
    engine = create_engine_for_url(database_url)
    await create_schema(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return create_session_factory(async_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def repo(db_session: AsyncSession) -> JobRepository:
    """Repository with the default retry policy."""
    return JobRepository(db_session)


@pytest_asyncio.fixture
async def app(database_url: str, settings_env: pytest.MonkeyPatch) -> AsyncGenerator[FastAPI]:
    """Create a FastAPI app for testing with an initialized database."""
    from analysis_queue.api.main import create_app

    settings_env.setenv("DATABASE_URL", database_url)
    settings_env.setenv("DATABASE_CREATE_SCHEMA", "true")
    get_settings.cache_clear()

    await close_db()
    await init_db()

    app = create_app()
    yield app

    await close_db()


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def owner_id() -> str:
    """Generate a test owner ID."""
    return f"test-owner-{uuid4().hex[:8]}"


@pytest.fixture
def owner_headers(owner_id: str) -> dict[str, str]:
    """Headers identifying the test owner."""
    return {"X-Owner-ID": owner_id}


@pytest.fixture
def target_id() -> str:
    """Generate a unique target (repository) ID."""
    return f"repo-{uuid4().hex[:12]}"
