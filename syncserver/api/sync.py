"""Sync API endpoints: client registration, diff, upload, download, delete."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import uuid
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from syncserver.api.deps import (
    get_blob_store,
    get_commit_lock,
    get_session,
    get_settings,
    require_folder,
    require_registered_client,
)
from syncserver.config import Settings
from syncserver.exceptions import InvalidPathError
from syncserver.filesystem.blob_store import BlobStore
from syncserver.models.sync import SyncClient, SyncFolder
from syncserver.schemas.sync import (
    ClientResponse,
    DeleteFileResponse,
    FileListResponse,
    RegisterClientRequest,
    SyncDiffResponse,
    SyncFileResponse,
    SyncStatusRequest,
)
from syncserver.services import manifest_service
from syncserver.services.datetime_service import parse_datetime
from syncserver.services.folder_service import get_client, register_client
from syncserver.services.path_service import is_hidden_path, normalize_sync_path
from syncserver.services.sync_service import ClientFile, compute_folder_diff

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync/{folder_id}", tags=["sync"])

_UPLOAD_CHUNK_SIZE = 1024 * 1024
_DEFAULT_MIME_TYPE = "application/octet-stream"


def _validated_path(raw: str) -> str:
    path = normalize_sync_path(raw)
    if is_hidden_path(path):
        raise InvalidPathError(f"Hidden paths are not synchronized: {raw}")
    return path


def _resolve_mime_type(path: str, declared: str | None) -> str:
    if declared and declared != _DEFAULT_MIME_TYPE:
        return declared
    guessed, _encoding = mimetypes.guess_type(path)
    return guessed or _DEFAULT_MIME_TYPE


async def _iter_upload(upload: UploadFile) -> AsyncIterator[bytes]:
    while chunk := await upload.read(_UPLOAD_CHUNK_SIZE):
        yield chunk


# ── Endpoints ────────────────────────────────────────


@router.post("/clients", response_model=ClientResponse)
async def sync_register_client(
    body: RegisterClientRequest,
    folder: Annotated[SyncFolder, Depends(require_folder)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> ClientResponse:
    """Register a device. Idempotent per device name."""
    client = await register_client(session, folder.id, body.device_name)
    return ClientResponse.model_validate(client)


@router.post("/status", response_model=SyncDiffResponse)
async def sync_status(
    body: SyncStatusRequest,
    folder: Annotated[SyncFolder, Depends(require_folder)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> SyncDiffResponse:
    """Compare the client's tree with the manifest and return the diff."""
    client = await get_client(session, folder.id, body.client_id)
    if client is None:
        raise HTTPException(status_code=401, detail="Unknown client id")

    client_files: list[ClientFile] = []
    for status in body.files:
        path = normalize_sync_path(status.path)
        if path != status.path:
            # Status paths must already be canonical; diff paths are used verbatim.
            raise InvalidPathError(f"Path is not in canonical form: {status.path!r}")
        if is_hidden_path(path):
            logger.warning("Ignoring hidden path in status from client %s: %s", client.id, path)
            continue
        try:
            modified_at = parse_datetime(status.modified_at)
        except ValueError as exc:
            raise HTTPException(
                status_code=422, detail=f"Invalid modified_at for {path}: {status.modified_at}"
            ) from exc
        client_files.append(
            ClientFile(
                path=path,
                checksum=status.checksum,
                size=status.size,
                modified_at=modified_at,
            )
        )

    diff = await compute_folder_diff(session, folder, client, client_files, settings)
    return SyncDiffResponse(
        upload=diff.upload,
        download=[SyncFileResponse.model_validate(f) for f in diff.download],
        delete=diff.delete,
    )


@router.get("/files", response_model=FileListResponse)
async def sync_list_files(
    folder: Annotated[SyncFolder, Depends(require_folder)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> FileListResponse:
    """List the folder's manifest."""
    files = await manifest_service.list_files(session, folder.id)
    return FileListResponse(files=[SyncFileResponse.model_validate(f) for f in files])


@router.post("/files/{file_path:path}", response_model=SyncFileResponse)
async def sync_upload(
    file_path: str,
    folder: Annotated[SyncFolder, Depends(require_folder)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
    commit_lock: Annotated[asyncio.Lock, Depends(get_commit_lock)],
    file: Annotated[UploadFile, File()],
) -> SyncFileResponse:
    """Store a whole file and bump its manifest version.

    The blob is staged and hashed first, moved into place, and only then is the
    manifest entry written.
    """
    path = _validated_path(file_path)
    mime_type = _resolve_mime_type(path, file.content_type)

    staged = await blob_store.stage(folder.id, _iter_upload(file), settings.max_upload_size)
    previous: Path | None = None
    try:
        async with commit_lock:
            existing = await manifest_service.get_file(session, folder.id, path)
            file_id = existing.id if existing is not None else str(uuid.uuid4())
            if existing is not None:
                previous = blob_store.keep_previous(folder.id, file_id)
            blob_store.commit(staged, file_id)
            try:
                entry = await manifest_service.upsert_file(
                    session,
                    folder_id=folder.id,
                    path=path,
                    file_id=file_id,
                    checksum=staged.checksum,
                    size=staged.size,
                    mime_type=mime_type,
                )
            except BaseException:
                # The manifest still describes the old blob, or no blob at all.
                if previous is not None:
                    blob_store.restore(previous, folder.id, file_id)
                    previous = None
                elif existing is None:
                    blob_store.delete(folder.id, file_id)
                raise
    except BaseException:
        blob_store.discard(staged)
        raise
    finally:
        if previous is not None:
            previous.unlink(missing_ok=True)

    logger.info(
        "Upload %s/%s: %d bytes, version %d", folder.id, path, entry.size, entry.version
    )
    return SyncFileResponse.model_validate(entry)


@router.get("/files/{file_id}/blob")
async def sync_download_blob(
    file_id: str,
    folder: Annotated[SyncFolder, Depends(require_folder)],
    session: Annotated[AsyncSession, Depends(get_session)],
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
) -> FileResponse:
    """Stream a blob by file id. ``ETag`` carries the manifest checksum."""
    entry = await manifest_service.get_file_by_id(session, folder.id, file_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="File not found")

    blob_path = blob_store.path_for(folder.id, entry.id)
    if not blob_path.is_file():
        logger.error("Blob missing for manifest entry %s/%s (%s)", folder.id, entry.path, entry.id)
        raise HTTPException(status_code=404, detail="File content not found")

    return FileResponse(
        blob_path,
        media_type=entry.mime_type,
        headers={
            "ETag": f'"{entry.checksum}"',
            "X-File-Version": str(entry.version),
        },
    )


@router.delete("/files/{file_path:path}", response_model=DeleteFileResponse)
async def sync_delete(
    file_path: str,
    folder: Annotated[SyncFolder, Depends(require_folder)],
    client: Annotated[SyncClient, Depends(require_registered_client)],
    session: Annotated[AsyncSession, Depends(get_session)],
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
    commit_lock: Annotated[asyncio.Lock, Depends(get_commit_lock)],
) -> DeleteFileResponse:
    """Remove a path from the manifest and remember the deletion."""
    path = _validated_path(file_path)

    async with commit_lock:
        removed = await manifest_service.delete_file(session, folder.id, path, client.id)
    if removed is None:
        raise HTTPException(status_code=404, detail="File not found")

    try:
        blob_store.delete(folder.id, removed.id)
    except OSError as exc:
        # The manifest no longer references the blob; it is an orphan now.
        logger.error("Failed to remove blob %s/%s: %s", folder.id, removed.id, exc)

    logger.info("Delete %s/%s by client %s", folder.id, path, client.device_name)
    return DeleteFileResponse(deleted=True, path=path)
