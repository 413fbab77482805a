"""Sync path normalization and validation."""

from __future__ import annotations

import re

from syncserver.exceptions import InvalidPathError

_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")
_MAX_PATH_LENGTH = 4096


def normalize_sync_path(raw: str) -> str:
    """Normalize a client-supplied path to the canonical folder-relative form.

    Backslashes become forward slashes and empty or ``.`` segments are dropped.
    Raises InvalidPathError for empty paths, absolute paths (leading ``/`` or a
    drive letter), ``..`` segments, and null or other control characters.
    """
    if not raw:
        raise InvalidPathError("Path must not be empty")
    if len(raw) > _MAX_PATH_LENGTH:
        raise InvalidPathError("Path is too long")
    if any(ord(ch) < 32 or ord(ch) == 127 for ch in raw):
        raise InvalidPathError(f"Path contains control characters: {raw!r}")

    candidate = raw.replace("\\", "/")
    if candidate.startswith("/"):
        raise InvalidPathError(f"Path must be relative: {raw}")
    if _DRIVE_PREFIX.match(candidate):
        raise InvalidPathError(f"Path must be relative: {raw}")

    segments = [segment for segment in candidate.split("/") if segment not in ("", ".")]
    if not segments:
        raise InvalidPathError(f"Path must name a file: {raw}")
    if ".." in segments:
        raise InvalidPathError(f"Path must not contain '..' segments: {raw}")
    return "/".join(segments)


def is_hidden_path(path: str) -> bool:
    """Return True when any path component starts with a dot."""
    return any(segment.startswith(".") for segment in path.split("/") if segment)


def file_name(path: str) -> str:
    """Return the last component of a normalized sync path."""
    return path.rsplit("/", 1)[-1]
