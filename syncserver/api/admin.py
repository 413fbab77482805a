"""Folder administration endpoints, guarded by the admin token."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from syncserver.api.deps import get_blob_store, get_session, require_admin
from syncserver.exceptions import ClientNotFoundError, FolderNotFoundError
from syncserver.filesystem.blob_store import BlobStore
from syncserver.schemas.admin import (
    ApiKeyResponse,
    FolderCreate,
    FolderListResponse,
    FolderRename,
    FolderResponse,
    FolderSummary,
)
from syncserver.schemas.sync import ClientResponse
from syncserver.services.folder_service import (
    create_folder,
    delete_client,
    delete_folder,
    list_folders,
    regenerate_api_key,
    rename_folder,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)


@router.get("/folders", response_model=FolderListResponse)
async def admin_list_folders(
    session: Annotated[AsyncSession, Depends(get_session)],
) -> FolderListResponse:
    """List folders with file counts, total size, and clients."""
    stats = await list_folders(session)
    return FolderListResponse(
        folders=[
            FolderSummary(
                id=s.folder.id,
                name=s.folder.name,
                api_key=s.folder.api_key,
                created_at=s.folder.created_at,
                updated_at=s.folder.updated_at,
                file_count=s.file_count,
                total_size=s.total_size,
                clients=[ClientResponse.model_validate(c) for c in s.clients],
            )
            for s in stats
        ]
    )


@router.post("/folders", response_model=FolderResponse, status_code=201)
async def admin_create_folder(
    body: FolderCreate,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> FolderResponse:
    folder = await create_folder(session, body.name)
    return FolderResponse.model_validate(folder)


@router.put("/folders/{folder_id}", response_model=FolderResponse)
async def admin_rename_folder(
    folder_id: str,
    body: FolderRename,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> FolderResponse:
    try:
        folder = await rename_folder(session, folder_id, body.name)
    except FolderNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Folder not found") from exc
    return FolderResponse.model_validate(folder)


@router.post("/folders/{folder_id}/regenerate-key", response_model=ApiKeyResponse)
async def admin_regenerate_key(
    folder_id: str,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> ApiKeyResponse:
    """Issue a new API key; existing clients must be reconfigured."""
    try:
        api_key = await regenerate_api_key(session, folder_id)
    except FolderNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Folder not found") from exc
    return ApiKeyResponse(api_key=api_key)


@router.delete("/folders/{folder_id}", status_code=204)
async def admin_delete_folder(
    folder_id: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
) -> None:
    try:
        await delete_folder(session, blob_store, folder_id)
    except FolderNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Folder not found") from exc


@router.delete("/clients/{client_id}", status_code=204)
async def admin_delete_client(
    client_id: str,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> None:
    try:
        await delete_client(session, client_id)
    except ClientNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Client not found") from exc
