"""Sync service: three-way diff between a client's tree and the server manifest."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from syncserver.exceptions import InternalServerError
from syncserver.services import manifest_service
from syncserver.services.datetime_service import format_iso, now_utc, parse_datetime

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from syncserver.config import Settings
    from syncserver.models.sync import SyncClient, SyncFile, SyncFolder

logger = logging.getLogger(__name__)


class ActionKind(StrEnum):
    """What a client must do with one path."""

    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE = "delete"


@dataclass
class ClientFile:
    """A file as reported by a client scan."""

    path: str
    checksum: str
    size: int
    modified_at: datetime


@dataclass
class SyncAction:
    """A single tagged action in a diff."""

    kind: ActionKind
    path: str
    file: SyncFile | None = None


@dataclass
class SyncDiff:
    """The computed diff, in wire order: three lists sorted by path."""

    upload: list[str] = field(default_factory=list)
    download: list[SyncFile] = field(default_factory=list)
    delete: list[str] = field(default_factory=list)

    @classmethod
    def from_actions(cls, actions: Iterable[SyncAction]) -> SyncDiff:
        diff = cls()
        for action in sorted(actions, key=lambda a: a.path):
            if action.kind is ActionKind.UPLOAD:
                diff.upload.append(action.path)
            elif action.kind is ActionKind.DOWNLOAD:
                if action.file is None:
                    raise InternalServerError(f"Download action without a file: {action.path}")
                diff.download.append(action.file)
            else:
                diff.delete.append(action.path)
        return diff

    def is_empty(self) -> bool:
        return not (self.upload or self.download or self.delete)


def plan_actions(
    server_files: Mapping[str, SyncFile],
    client_files: Mapping[str, ClientFile],
    recent_deletes: Mapping[str, datetime],
) -> list[SyncAction]:
    """Compute the per-path actions for one client.

    - Client-only path: upload, unless it was deleted on the server after the
      client's copy was last modified, in which case the client deletes it.
    - Same checksum on both sides: nothing to do.
    - Different checksum: the strictly newer side wins; ties go to the server.
    - Server-only path: download. Absence on the client never means delete.
    """
    actions: list[SyncAction] = []

    for path, client_file in client_files.items():
        server_file = server_files.get(path)
        if server_file is None:
            deleted_at = recent_deletes.get(path)
            if deleted_at is not None and client_file.modified_at < deleted_at:
                actions.append(SyncAction(ActionKind.DELETE, path))
            else:
                actions.append(SyncAction(ActionKind.UPLOAD, path))
            continue

        if server_file.checksum == client_file.checksum:
            continue

        server_updated = parse_datetime(server_file.updated_at)
        if client_file.modified_at > server_updated:
            actions.append(SyncAction(ActionKind.UPLOAD, path))
        else:
            actions.append(SyncAction(ActionKind.DOWNLOAD, path, server_file))

    for path, server_file in server_files.items():
        if path not in client_files:
            actions.append(SyncAction(ActionKind.DOWNLOAD, path, server_file))

    return actions


def compute_sync_diff(
    server_files: Mapping[str, SyncFile],
    client_files: Mapping[str, ClientFile],
    recent_deletes: Mapping[str, datetime],
) -> SyncDiff:
    """Compute the wire diff for a client's reported tree."""
    return SyncDiff.from_actions(plan_actions(server_files, client_files, recent_deletes))


async def compute_folder_diff(
    session: AsyncSession,
    folder: SyncFolder,
    client: SyncClient,
    client_files: Iterable[ClientFile],
    settings: Settings,
) -> SyncDiff:
    """Load the folder state, diff it against the client, and stamp the client's sync time.

    Paths must already be normalized. When a path is reported twice the last
    report wins.
    """
    client_map: dict[str, ClientFile] = {}
    for client_file in client_files:
        client_map[client_file.path] = client_file

    server_map = {f.path: f for f in await manifest_service.list_files(session, folder.id)}

    now = now_utc()
    if settings.persistent_tombstones:
        since = None
    else:
        since = now - settings.recent_deletes_window
        await manifest_service.prune_recent_deletes(session, folder.id, before=since)
    deletes = await manifest_service.recent_deletes(session, folder.id, since=since)

    diff = compute_sync_diff(server_map, client_map, deletes)

    client.last_sync_at = format_iso(now)
    await session.commit()

    logger.info(
        "Sync diff for folder %s client %s: %d upload, %d download, %d delete",
        folder.id,
        client.device_name,
        len(diff.upload),
        len(diff.download),
        len(diff.delete),
    )
    return diff
