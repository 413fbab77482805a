"""Local tree scanning and streamed hashing."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import stat
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 64 * 1024
TEMP_SUFFIX = ".foldersync-tmp"
MAX_PATH_LENGTH = 4096

_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")


@dataclass
class FileStatus:
    """One local file, in the shape sent to the diff endpoint."""

    path: str
    checksum: str
    size: int
    modified_at: str

    def to_json(self) -> dict[str, str | int]:
        return asdict(self)


def hash_file(path: Path) -> str:
    """Compute the SHA-256 hex digest of a file without loading it whole."""
    sha = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            sha.update(chunk)
    return sha.hexdigest()


def is_hidden(rel_path: str) -> bool:
    """Return True when any component of a folder-relative path starts with a dot."""
    return any(part.startswith(".") for part in rel_path.split("/") if part)


def unsyncable_reason(rel_path: str) -> str | None:
    """Say why the server would refuse this path, or return None if it is fine.

    POSIX allows names the sync protocol cannot carry: backslashes (read as
    separators), a leading drive letter, control characters.
    """
    if len(rel_path) > MAX_PATH_LENGTH:
        return "path too long"
    if any(ord(ch) < 32 or ord(ch) == 127 for ch in rel_path):
        return "control characters in name"
    if "\\" in rel_path:
        return "backslash in name"
    if _DRIVE_PREFIX.match(rel_path):
        return "name looks like a drive letter"
    return None


def to_rel_path(root: Path, full: Path) -> str | None:
    """Convert an absolute path under root to the forward-slash sync form."""
    try:
        rel = full.relative_to(root)
    except ValueError:
        return None
    rel_str = rel.as_posix()
    if rel_str in ("", "."):
        return None
    return rel_str


def format_mtime(timestamp: float) -> str:
    """Render a POSIX mtime as ISO 8601 UTC."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def stat_file(root: Path, rel_path: str) -> FileStatus | None:
    """Build the status of one regular file, or None if it is not one (any more)."""
    full = root / rel_path
    try:
        st = full.lstat()
        if not stat.S_ISREG(st.st_mode):
            return None
        checksum = hash_file(full)
    except FileNotFoundError:
        return None
    return FileStatus(
        path=rel_path,
        checksum=checksum,
        size=st.st_size,
        modified_at=format_mtime(st.st_mtime),
    )


def scan_local_files(root: Path) -> list[FileStatus]:
    """Walk root and return the status of every visible regular file, sorted by path.

    Hidden entries, symlinks, and special files are skipped. Unreadable files are
    logged and left out; the next scan picks them up again.
    """
    entries: list[FileStatus] = []
    for dirpath, dirs, files in os.walk(root, followlinks=False):
        dirs[:] = sorted(d for d in dirs if not d.startswith("."))
        for filename in sorted(files):
            if filename.startswith("."):
                continue
            rel = to_rel_path(root, Path(dirpath) / filename)
            if rel is None:
                continue
            reason = unsyncable_reason(rel)
            if reason is not None:
                logger.warning("Not syncing %r: %s", rel, reason)
                continue
            try:
                status = stat_file(root, rel)
            except OSError as exc:
                logger.warning("Cannot read %s, skipping: %s", rel, exc)
                continue
            if status is not None:
                entries.append(status)
    entries.sort(key=lambda e: e.path)
    return entries


def temp_sibling(target: Path) -> Path:
    """Return the hidden temp path a download of target is written to."""
    return target.with_name(f".{target.name}{TEMP_SUFFIX}")


def cleanup_temp_files(root: Path) -> int:
    """Delete download temp siblings left behind by an interrupted run."""
    removed = 0
    for dirpath, dirs, files in os.walk(root, followlinks=False):
        dirs[:] = [d for d in dirs if not d.startswith(".")]
        for filename in files:
            if filename.startswith(".") and filename.endswith(TEMP_SUFFIX):
                try:
                    (Path(dirpath) / filename).unlink()
                except FileNotFoundError:
                    continue
                removed += 1
    if removed:
        logger.info("Removed %d stale download temp file(s) under %s", removed, root)
    return removed
