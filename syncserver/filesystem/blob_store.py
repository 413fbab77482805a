"""Filesystem-backed blob store addressed by folder id and file id."""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from syncserver.exceptions import InternalServerError, UploadTooLargeError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

STAGING_DIR = ".staging"


@dataclass
class StagedBlob:
    """Bytes written to the staging area, hashed but not yet visible."""

    folder_id: str
    staging_path: Path
    checksum: str
    size: int


def _check_id(value: str) -> str:
    # Ids are generated server-side; anything path-like is a bug.
    if not value or "/" in value or "\\" in value or value.startswith("."):
        raise InternalServerError(f"Invalid blob identifier: {value!r}")
    return value


class BlobStore:
    """Opaque byte store laid out as ``<root>/<folder_id>/<file_id>``.

    Writes go through a per-folder staging directory and become visible with an
    atomic rename, so a reader sees either the previous blob or the new one.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def ensure_root(self) -> None:
        if self.root.exists() and not self.root.is_dir():
            msg = f"Blob storage path exists but is not a directory: {self.root}"
            raise NotADirectoryError(msg)
        self.root.mkdir(parents=True, exist_ok=True)

    def folder_dir(self, folder_id: str) -> Path:
        return self.root / _check_id(folder_id)

    def path_for(self, folder_id: str, file_id: str) -> Path:
        return self.folder_dir(folder_id) / _check_id(file_id)

    async def stage(
        self,
        folder_id: str,
        chunks: AsyncIterator[bytes],
        max_size: int,
    ) -> StagedBlob:
        """Stream chunks into a staging file, hashing as they arrive.

        Raises UploadTooLargeError (and removes the partial file) once more than
        max_size bytes have been received.
        """
        staging_dir = self.folder_dir(folder_id) / STAGING_DIR
        staging_dir.mkdir(parents=True, exist_ok=True)
        staging_path = staging_dir / uuid.uuid4().hex

        sha = hashlib.sha256()
        size = 0
        try:
            with open(staging_path, "wb") as f:
                async for chunk in chunks:
                    size += len(chunk)
                    if size > max_size:
                        raise UploadTooLargeError(max_size)
                    sha.update(chunk)
                    f.write(chunk)
                f.flush()
                os.fsync(f.fileno())
        except BaseException:
            staging_path.unlink(missing_ok=True)
            raise

        return StagedBlob(
            folder_id=folder_id,
            staging_path=staging_path,
            checksum=sha.hexdigest(),
            size=size,
        )

    def commit(self, staged: StagedBlob, file_id: str) -> Path:
        """Atomically move a staged blob into place under file_id."""
        target = self.path_for(staged.folder_id, file_id)
        os.replace(staged.staging_path, target)
        return target

    def discard(self, staged: StagedBlob) -> None:
        staged.staging_path.unlink(missing_ok=True)

    def keep_previous(self, folder_id: str, file_id: str) -> Path | None:
        """Hard-link the current blob into staging so a failed commit can be undone.

        The blob stays readable in place. Returns None when there is no blob.
        """
        current = self.path_for(folder_id, file_id)
        staging_dir = self.folder_dir(folder_id) / STAGING_DIR
        staging_dir.mkdir(parents=True, exist_ok=True)
        backup = staging_dir / f"{uuid.uuid4().hex}.prev"
        try:
            os.link(current, backup)
        except FileNotFoundError:
            return None
        except OSError:
            # No hard links on this filesystem.
            shutil.copy2(current, backup)
        return backup

    def restore(self, backup: Path, folder_id: str, file_id: str) -> None:
        """Put a blob saved by keep_previous back in place."""
        os.replace(backup, self.path_for(folder_id, file_id))

    def delete(self, folder_id: str, file_id: str) -> bool:
        """Remove a blob. Returns False when it was already gone."""
        try:
            self.path_for(folder_id, file_id).unlink()
        except FileNotFoundError:
            return False
        return True

    def delete_folder(self, folder_id: str) -> None:
        folder_dir = self.folder_dir(folder_id)
        if folder_dir.exists():
            shutil.rmtree(folder_dir)

    def cleanup_staging(self) -> int:
        """Remove staging leftovers from interrupted uploads. Returns the count."""
        if not self.root.is_dir():
            return 0
        removed = 0
        for staging_dir in self.root.glob(f"*/{STAGING_DIR}"):
            for leftover in staging_dir.iterdir():
                if leftover.is_file():
                    leftover.unlink(missing_ok=True)
                    removed += 1
        if removed:
            logger.info("Removed %d stale staged upload(s) from %s", removed, self.root)
        return removed
