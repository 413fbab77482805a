"""Sync folder, manifest, client, recent-delete, and path version models."""

from __future__ import annotations

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from syncserver.models.base import Base


class SyncFolder(Base):
    """A named replication unit scoped by a single API key."""

    __tablename__ = "sync_folders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    api_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)

    files: Mapped[list[SyncFile]] = relationship(
        back_populates="folder", cascade="all, delete-orphan", passive_deletes=True
    )
    clients: Mapped[list[SyncClient]] = relationship(
        back_populates="folder", cascade="all, delete-orphan", passive_deletes=True
    )


class SyncFile(Base):
    """Authoritative manifest entry for one path in a folder."""

    __tablename__ = "sync_files"
    __table_args__ = (UniqueConstraint("folder_id", "path", name="uq_sync_files_folder_path"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    folder_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sync_folders.id", ondelete="CASCADE"), nullable=False
    )
    path: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    mime_type: Mapped[str] = mapped_column(String, nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)

    folder: Mapped[SyncFolder] = relationship(back_populates="files")


class SyncClient(Base):
    """A registered device syncing a folder."""

    __tablename__ = "sync_clients"
    __table_args__ = (
        UniqueConstraint("folder_id", "device_name", name="uq_sync_clients_folder_device"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    folder_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sync_folders.id", ondelete="CASCADE"), nullable=False
    )
    device_name: Mapped[str] = mapped_column(String, nullable=False)
    last_sync_at: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)

    folder: Mapped[SyncFolder] = relationship(back_populates="clients")


class RecentDelete(Base):
    """Record of an explicit deletion, consulted during diff computation."""

    __tablename__ = "sync_recent_deletes"
    __table_args__ = (Index("ix_sync_recent_deletes_folder_path", "folder_id", "path"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    folder_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sync_folders.id", ondelete="CASCADE"), nullable=False
    )
    path: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    deleted_at: Mapped[str] = mapped_column(Text, nullable=False)
    deleted_by_client_id: Mapped[str | None] = mapped_column(String(36), nullable=True)


class PathVersion(Base):
    """Highest version ever assigned to a path, kept across deletes and pruning."""

    __tablename__ = "sync_path_versions"

    folder_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sync_folders.id", ondelete="CASCADE"), primary_key=True
    )
    path: Mapped[str] = mapped_column(Text, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
