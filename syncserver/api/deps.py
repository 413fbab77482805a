"""Shared API dependencies: DB session, blob store, folder and admin auth."""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Path, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from syncserver.config import Settings
from syncserver.filesystem.blob_store import BlobStore
from syncserver.models.sync import SyncClient, SyncFolder
from syncserver.services.folder_service import authenticate_folder, get_client


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_blob_store(request: Request) -> BlobStore:
    """Get the blob store from app state."""
    store: BlobStore = request.app.state.blob_store
    return store


def get_commit_lock(request: Request) -> asyncio.Lock:
    """Get the lock serializing blob commits and manifest writes."""
    lock: asyncio.Lock = request.app.state.commit_lock
    return lock


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "X-API-Key"},
    )


async def require_folder(
    folder_id: Annotated[str, Path(min_length=1, max_length=64)],
    session: Annotated[AsyncSession, Depends(get_session)],
    x_api_key: Annotated[str | None, Header()] = None,
) -> SyncFolder:
    """Resolve the folder in the URL and check the ``X-API-Key`` header against it.

    Unknown folders and wrong keys both return 401 so folder ids cannot be probed.
    """
    if not x_api_key:
        raise _unauthorized("Missing API key")
    folder = await authenticate_folder(session, folder_id, x_api_key)
    if folder is None:
        raise _unauthorized("Invalid API key")
    return folder


async def require_registered_client(
    folder: Annotated[SyncFolder, Depends(require_folder)],
    session: Annotated[AsyncSession, Depends(get_session)],
    x_client_id: Annotated[str | None, Header()] = None,
) -> SyncClient:
    """Require an ``X-Client-Id`` header naming a client registered to the folder."""
    if not x_client_id:
        raise _unauthorized("Missing client id")
    client = await get_client(session, folder.id, x_client_id)
    if client is None:
        raise _unauthorized("Unknown client id")
    return client


async def require_admin(
    settings: Annotated[Settings, Depends(get_settings)],
    x_admin_token: Annotated[str | None, Header()] = None,
) -> None:
    """Require the configured admin token. Raises 403 when missing, wrong, or disabled."""
    if not settings.admin_token or not x_admin_token:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    if not secrets.compare_digest(x_admin_token.encode(), settings.admin_token.encode()):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
