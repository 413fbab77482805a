"""Shared test fixtures for FolderSync."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)

from syncserver.config import Settings
from syncserver.database import create_engine
from syncserver.filesystem.blob_store import BlobStore
from syncserver.main import create_app, init_app_state
from syncserver.models.base import Base

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from fastapi import FastAPI

logger = logging.getLogger(__name__)

TEST_ADMIN_TOKEN = "test-admin-token-with-at-least-32-characters"
ADMIN_HEADERS = {"X-Admin-Token": TEST_ADMIN_TOKEN}


@asynccontextmanager
async def create_test_app(settings: Settings) -> AsyncGenerator[FastAPI]:
    """Create a fully initialized app.

    Performs the work of the application lifespan (schema, blob store) because
    ASGITransport does not trigger it.
    """
    app = create_app(settings)
    settings.validate_runtime_security()
    await init_app_state(app)
    try:
        yield app
    finally:
        await app.state.engine.dispose()


@asynccontextmanager
async def create_test_client(settings: Settings) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app."""
    async with (
        create_test_app(settings) as app,
        AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac,
    ):
        yield ac


async def create_folder(client: AsyncClient, name: str = "Documents") -> dict[str, Any]:
    """Create a folder through the admin API and return its JSON (id, api_key, ...)."""
    resp = await client.post("/api/admin/folders", json={"name": name}, headers=ADMIN_HEADERS)
    assert resp.status_code == 201, resp.text
    folder: dict[str, Any] = resp.json()
    return folder


async def register_client(
    client: AsyncClient, folder: dict[str, Any], device_name: str = "laptop"
) -> str:
    """Register a device against a folder and return its client id."""
    resp = await client.post(
        f"/api/sync/{folder['id']}/clients",
        json={"deviceName": device_name},
        headers={"X-API-Key": folder["api_key"]},
    )
    assert resp.status_code == 200, resp.text
    client_id: str = resp.json()["id"]
    return client_id


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths."""
    db_path = tmp_path / "test.db"
    return Settings(
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        storage_dir=tmp_path / "blobs",
        admin_token=TEST_ADMIN_TOKEN,
    )


@pytest.fixture
def blob_store(tmp_path: Path) -> BlobStore:
    """Create a blob store rooted in a temporary directory."""
    store = BlobStore(tmp_path / "blobs")
    store.ensure_root()
    return store


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the schema in place."""
    engine, _session_factory = create_engine(test_settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(
    db_engine: AsyncEngine,
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    session_factory = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_factory() as session:
        yield session
