"""Server manifest store: per-folder file entries, versions, and recent deletes."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import delete, select

from syncserver.models.sync import PathVersion, RecentDelete, SyncFile
from syncserver.services.datetime_service import format_iso, now_utc, parse_datetime
from syncserver.services.path_service import file_name

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


async def list_files(session: AsyncSession, folder_id: str) -> list[SyncFile]:
    """Return every manifest entry of a folder, ordered by path."""
    stmt = select(SyncFile).where(SyncFile.folder_id == folder_id).order_by(SyncFile.path)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_file(session: AsyncSession, folder_id: str, path: str) -> SyncFile | None:
    stmt = select(SyncFile).where(SyncFile.folder_id == folder_id, SyncFile.path == path)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_file_by_id(session: AsyncSession, folder_id: str, file_id: str) -> SyncFile | None:
    """Look up an entry by id, scoped to the folder so ids never leak across folders."""
    entry = await session.get(SyncFile, file_id)
    if entry is None or entry.folder_id != folder_id:
        return None
    return entry


async def _version_high_water(session: AsyncSession, folder_id: str, path: str) -> int:
    mark = await session.get(PathVersion, (folder_id, path))
    return mark.version if mark is not None else 0


async def _record_version(
    session: AsyncSession, folder_id: str, path: str, version: int
) -> None:
    mark = await session.get(PathVersion, (folder_id, path))
    if mark is None:
        session.add(PathVersion(folder_id=folder_id, path=path, version=version))
    elif version > mark.version:
        mark.version = version


async def upsert_file(
    session: AsyncSession,
    *,
    folder_id: str,
    path: str,
    file_id: str,
    checksum: str,
    size: int,
    mime_type: str,
) -> SyncFile:
    """Create or update the manifest entry for path and bump its version.

    ``file_id`` is only used when the entry is new; existing entries keep their
    id so the blob address is stable. A path re-created after a delete continues
    from the highest version it ever had, which survives the recent-delete
    window. Commits the session.
    """
    now = format_iso(now_utc())
    entry = await get_file(session, folder_id, path)
    if entry is None:
        previous_version = await _version_high_water(session, folder_id, path)
        entry = SyncFile(
            id=file_id,
            folder_id=folder_id,
            path=path,
            name=file_name(path),
            mime_type=mime_type,
            size=size,
            checksum=checksum,
            version=previous_version + 1,
            created_at=now,
            updated_at=now,
        )
        session.add(entry)
    else:
        entry.checksum = checksum
        entry.size = size
        entry.mime_type = mime_type
        entry.version = entry.version + 1
        entry.updated_at = now

    await _record_version(session, folder_id, path, entry.version)
    await session.execute(
        delete(RecentDelete).where(RecentDelete.folder_id == folder_id, RecentDelete.path == path)
    )
    await session.commit()
    logger.debug("Manifest upsert %s/%s -> version %d", folder_id, path, entry.version)
    return entry


async def delete_file(
    session: AsyncSession,
    folder_id: str,
    path: str,
    client_id: str | None,
) -> SyncFile | None:
    """Remove the manifest entry for path and record a recent delete.

    Returns the removed entry (so the caller can drop its blob), or None when
    the path is not in the manifest. Commits the session.
    """
    entry = await get_file(session, folder_id, path)
    if entry is None:
        return None

    session.add(
        RecentDelete(
            folder_id=folder_id,
            path=path,
            version=entry.version,
            deleted_at=format_iso(now_utc()),
            deleted_by_client_id=client_id,
        )
    )
    await session.delete(entry)
    await session.commit()
    return entry


async def recent_deletes(
    session: AsyncSession,
    folder_id: str,
    *,
    since: datetime | None,
) -> dict[str, datetime]:
    """Map each recently deleted path to its latest deletion time.

    ``since`` of None means every recorded deletion counts (persistent tombstones).
    """
    stmt = select(RecentDelete.path, RecentDelete.deleted_at).where(
        RecentDelete.folder_id == folder_id
    )
    result = await session.execute(stmt)
    latest: dict[str, datetime] = {}
    for path, deleted_at_raw in result.all():
        deleted_at = parse_datetime(deleted_at_raw)
        if since is not None and deleted_at < since:
            continue
        if path not in latest or deleted_at > latest[path]:
            latest[path] = deleted_at
    return latest


async def prune_recent_deletes(session: AsyncSession, folder_id: str, *, before: datetime) -> int:
    """Drop recent-delete records older than ``before``. Returns the count removed."""
    stmt = select(RecentDelete.id, RecentDelete.deleted_at).where(
        RecentDelete.folder_id == folder_id
    )
    result = await session.execute(stmt)
    expired = [row_id for row_id, deleted_at in result.all() if parse_datetime(deleted_at) < before]
    if not expired:
        return 0
    await session.execute(delete(RecentDelete).where(RecentDelete.id.in_(expired)))
    await session.commit()
    logger.debug("Pruned %d expired recent delete(s) in folder %s", len(expired), folder_id)
    return len(expired)
