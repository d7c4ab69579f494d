"""
Pytest configuration and shared fixtures.
"""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from image_queue.api.main import create_app
from image_queue.db import close_db, connection, create_schema, init_db
from image_queue.queue import Enqueuer
from image_queue.worker.background import drain_background_tasks
from image_queue.worker.burst import BurstConfig
from image_queue.worker.handlers import HandlerRegistry
from image_queue.worker.processor import JobProcessor
from image_queue.worker.retry import BackoffPolicy


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """A fresh SQLite database per test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}"


@pytest_asyncio.fixture
async def db(database_url: str) -> AsyncGenerator[None]:
    """Initialize the global engine and create the schema."""
    await init_db(database_url)
    await create_schema()

    yield

    # Background bursts and drains must finish before the engine goes away
    await drain_background_tasks()
    await close_db()


@pytest_asyncio.fixture
async def db_session(db) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests. Tests commit explicitly."""
    async with connection.AsyncSessionLocal() as session:
        yield session

        # Rollback any uncommitted changes
        await session.rollback()


@pytest.fixture
def registry() -> HandlerRegistry:
    """An empty handler registry, isolated from default_registry."""
    return HandlerRegistry()


@pytest.fixture
def backoff() -> BackoffPolicy:
    """Retry policy with three attempts."""
    return BackoffPolicy(max_retries=3, base_seconds=10.0, cap_seconds=300.0)


@pytest.fixture
def processor(registry: HandlerRegistry, backoff: BackoffPolicy) -> JobProcessor:
    return JobProcessor(registry=registry, backoff=backoff)


@pytest.fixture
def enqueuer(db) -> Enqueuer:
    """Enqueuer without a wake signal."""
    return Enqueuer()


@pytest.fixture
def burst_config() -> BurstConfig:
    """Burst tuning that exits as soon as the queue is empty."""
    return BurstConfig(
        lease_name="test-runner",
        lease_ttl_seconds=30.0,
        batch_size=1,
        poll_interval_ms=10,
        idle_exit_ms=0,
        max_runtime_ms=10_000,
    )


@pytest_asyncio.fixture
async def app(db) -> AsyncGenerator[FastAPI]:
    """Create a FastAPI app for testing with initialized database."""
    app = create_app()
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
