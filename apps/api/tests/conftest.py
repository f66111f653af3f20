"""Pytest fixtures for API tests."""

import base64
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from api.routes.chapters import get_download_service
from core.config import Settings, get_settings
from db.session import get_session
from main import app
from services.chapter_extractor import ImageResult
from services.chapter_storage import ChapterStorage
from services.chapter_tracker import ChapterTracker


# Test database URL (SQLite in-memory for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Smallest valid PNG (1x1 transparent pixel)
PNG_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings with overrides."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        debug=True,
        environment="development",
        images_dir=Path("/tmp/test_images"),
        backlog_enabled=False,
    )


@pytest.fixture
def fast_settings(tmp_path: Path) -> Settings:
    """Settings with every delay collapsed so retry paths run instantly."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        images_dir=tmp_path / "images",
        item_max_attempts=3,
        item_retry_delay_seconds=0,
        item_timeout_seconds=5,
        evaluate_retries=3,
        evaluate_retry_delay_seconds=0,
        load_poll_interval_seconds=0,
        load_poll_max_retries=5,
        max_context_recoveries=2,
        backlog_enabled=False,
    )


@pytest.fixture
async def test_engine(test_settings: Settings) -> AsyncGenerator[Any, None]:
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: Any) -> Callable[[], AsyncSession]:
    """Session factory bound to the test engine."""
    return sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def test_session(session_factory: Callable[[], AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def tracker(session_factory: Callable[[], AsyncSession]) -> ChapterTracker:
    """Chapter tracker on the in-memory database."""
    return ChapterTracker(session_factory)


@pytest.fixture
def storage(tmp_path: Path) -> ChapterStorage:
    """Chapter storage rooted in a temporary directory."""
    return ChapterStorage(root=tmp_path / "images", extension="png")


@pytest.fixture
def mock_download_service() -> MagicMock:
    """Create mock download service."""
    mock = MagicMock()
    mock.download_chapter = AsyncMock(return_value=None)
    mock.list_chapters = AsyncMock(return_value=[])
    mock.backlog_status = AsyncMock(return_value=[])
    mock.cancel = MagicMock(return_value=False)
    mock.tracker = MagicMock()
    mock.tracker.upsert = AsyncMock(return_value=[])
    return mock


@pytest.fixture
async def client(
    test_session: AsyncSession,
    test_settings: Settings,
    mock_download_service: MagicMock,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with dependency overrides."""

    async def override_get_session() -> AsyncGenerator[AsyncSession, None]:
        yield test_session

    def override_get_settings() -> Settings:
        return test_settings

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_settings] = override_get_settings
    app.dependency_overrides[get_download_service] = lambda: mock_download_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def png_bytes() -> bytes:
    return PNG_BYTES


@pytest.fixture
def make_results() -> Callable[..., list[ImageResult]]:
    """Factory for extraction results: `total` pages, `failed` indices missing data."""

    def factory(total: int, failed: set[int] | None = None) -> list[ImageResult]:
        failed = failed or set()
        return [
            ImageResult(index=i, error="Failed to fetch image")
            if i in failed
            else ImageResult(index=i, data=PNG_BYTES, page_order=i + 1)
            for i in range(total)
        ]

    return factory
