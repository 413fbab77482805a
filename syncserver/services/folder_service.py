"""Folder and client administration: creation, API keys, and device registration."""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from syncserver.exceptions import ClientNotFoundError, FolderNotFoundError
from syncserver.models.sync import SyncClient, SyncFile, SyncFolder
from syncserver.services.datetime_service import format_iso, now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from syncserver.filesystem.blob_store import BlobStore

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "sync_"


def generate_api_key() -> str:
    """Generate a folder API key: ``sync_`` followed by 32 hex characters."""
    return f"{API_KEY_PREFIX}{secrets.token_hex(16)}"


@dataclass
class FolderStats:
    """Aggregate view of a folder for administrators."""

    folder: SyncFolder
    file_count: int
    total_size: int
    clients: list[SyncClient] = field(default_factory=list)


async def create_folder(session: AsyncSession, name: str) -> SyncFolder:
    name = name.strip()
    if not name:
        raise ValueError("Folder name must not be empty")
    now = format_iso(now_utc())
    folder = SyncFolder(
        id=str(uuid.uuid4()),
        name=name,
        api_key=generate_api_key(),
        created_at=now,
        updated_at=now,
    )
    session.add(folder)
    await session.commit()
    logger.info("Created sync folder %s (%s)", folder.id, folder.name)
    return folder


async def get_folder(session: AsyncSession, folder_id: str) -> SyncFolder:
    folder = await session.get(SyncFolder, folder_id)
    if folder is None:
        raise FolderNotFoundError(folder_id)
    return folder


async def authenticate_folder(
    session: AsyncSession, folder_id: str, api_key: str
) -> SyncFolder | None:
    """Return the folder when api_key is its current key, otherwise None."""
    folder = await session.get(SyncFolder, folder_id)
    if folder is None:
        return None
    if not secrets.compare_digest(folder.api_key.encode(), api_key.encode()):
        return None
    return folder


async def list_folders(session: AsyncSession) -> list[FolderStats]:
    folders = (
        await session.execute(select(SyncFolder).order_by(SyncFolder.created_at.desc()))
    ).scalars().all()

    totals_stmt = select(
        SyncFile.folder_id, func.count(SyncFile.id), func.coalesce(func.sum(SyncFile.size), 0)
    ).group_by(SyncFile.folder_id)
    totals = {row[0]: (row[1], row[2]) for row in (await session.execute(totals_stmt)).all()}

    stats: list[FolderStats] = []
    for folder in folders:
        file_count, total_size = totals.get(folder.id, (0, 0))
        clients = await list_clients(session, folder.id)
        stats.append(
            FolderStats(
                folder=folder,
                file_count=int(file_count),
                total_size=int(total_size),
                clients=clients,
            )
        )
    return stats


async def rename_folder(session: AsyncSession, folder_id: str, name: str) -> SyncFolder:
    name = name.strip()
    if not name:
        raise ValueError("Folder name must not be empty")
    folder = await get_folder(session, folder_id)
    folder.name = name
    folder.updated_at = format_iso(now_utc())
    await session.commit()
    return folder


async def regenerate_api_key(session: AsyncSession, folder_id: str) -> str:
    """Replace the folder's API key; the previous key stops working immediately."""
    folder = await get_folder(session, folder_id)
    folder.api_key = generate_api_key()
    folder.updated_at = format_iso(now_utc())
    await session.commit()
    logger.info("Regenerated API key for sync folder %s", folder_id)
    return folder.api_key


async def delete_folder(session: AsyncSession, blob_store: BlobStore, folder_id: str) -> None:
    """Delete a folder with its manifest, clients, delete records, and blobs."""
    folder = await get_folder(session, folder_id)
    await session.delete(folder)
    await session.commit()
    blob_store.delete_folder(folder_id)
    logger.info("Deleted sync folder %s", folder_id)


async def register_client(session: AsyncSession, folder_id: str, device_name: str) -> SyncClient:
    """Register a device for a folder. Repeated calls return the same client."""
    device_name = device_name.strip()
    if not device_name:
        raise ValueError("Device name must not be empty")

    existing = await _find_client_by_device(session, folder_id, device_name)
    if existing is not None:
        return existing

    client = SyncClient(
        id=str(uuid.uuid4()),
        folder_id=folder_id,
        device_name=device_name,
        created_at=format_iso(now_utc()),
    )
    session.add(client)
    try:
        await session.commit()
    except IntegrityError:
        # Lost a race with a concurrent registration of the same device.
        await session.rollback()
        existing = await _find_client_by_device(session, folder_id, device_name)
        if existing is None:
            raise
        return existing
    logger.info("Registered client %s (%s) for folder %s", client.id, device_name, folder_id)
    return client


async def _find_client_by_device(
    session: AsyncSession, folder_id: str, device_name: str
) -> SyncClient | None:
    stmt = select(SyncClient).where(
        SyncClient.folder_id == folder_id, SyncClient.device_name == device_name
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def get_client(session: AsyncSession, folder_id: str, client_id: str) -> SyncClient | None:
    client = await session.get(SyncClient, client_id)
    if client is None or client.folder_id != folder_id:
        return None
    return client


async def list_clients(session: AsyncSession, folder_id: str) -> list[SyncClient]:
    stmt = (
        select(SyncClient)
        .where(SyncClient.folder_id == folder_id)
        .order_by(SyncClient.created_at.desc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def delete_client(session: AsyncSession, client_id: str) -> None:
    client = await session.get(SyncClient, client_id)
    if client is None:
        raise ClientNotFoundError(client_id)
    await session.delete(client)
    await session.commit()
