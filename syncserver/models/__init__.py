"""SQLAlchemy ORM models for FolderSync."""

from syncserver.models.base import Base
from syncserver.models.sync import PathVersion, RecentDelete, SyncClient, SyncFile, SyncFolder

__all__ = [
    "Base",
    "PathVersion",
    "RecentDelete",
    "SyncClient",
    "SyncFile",
    "SyncFolder",
]
