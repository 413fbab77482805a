"""Tests for database engine and session management."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import text

from syncserver.config import Settings
from syncserver.database import create_engine

if TYPE_CHECKING:
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession


class TestDatabase:
    @pytest.mark.asyncio
    async def test_engine_connects(self, db_engine: AsyncEngine) -> None:
        async with db_engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            assert result.scalar() == 1

    @pytest.mark.asyncio
    async def test_session_works(self, db_session: AsyncSession) -> None:
        result = await db_session.execute(text("SELECT 42"))
        assert result.scalar() == 42

    @pytest.mark.asyncio
    async def test_foreign_keys_enabled(self, db_engine: AsyncEngine) -> None:
        async with db_engine.connect() as conn:
            result = await conn.execute(text("PRAGMA foreign_keys"))
            assert result.scalar() == 1

    @pytest.mark.asyncio
    async def test_creates_database_directory(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "db" / "sync.db"
        settings = Settings(_env_file=None, database_url=f"sqlite+aiosqlite:///{db_path}")
        engine, _session_factory = create_engine(settings)
        try:
            assert db_path.parent.is_dir()
        finally:
            await engine.dispose()
