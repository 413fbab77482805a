"""Application configuration loaded from environment variables."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """FolderSync server settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="FOLDERSYNC_",
        extra="ignore",
    )

    # Core
    debug: bool = False
    expose_docs: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/foldersync.db"

    # Blob storage
    storage_dir: Path = Path("./data/blobs")
    max_upload_size: int = Field(default=512 * 1024 * 1024, ge=1)

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)
    trusted_hosts: list[str] = Field(default_factory=list)

    # Deletion propagation
    recent_deletes_window_hours: float = Field(default=24.0, gt=0)
    persistent_tombstones: bool = False

    # Folder administration; an empty token disables the admin API
    admin_token: str = ""

    @property
    def recent_deletes_window(self) -> timedelta:
        return timedelta(hours=self.recent_deletes_window_hours)

    def validate_runtime_security(self) -> None:
        """Validate security-critical production settings."""
        if self.debug:
            return

        violations: list[str] = []
        if self.admin_token and len(self.admin_token) < 32:
            violations.append("ADMIN_TOKEN must be a high-entropy value (>=32 chars) or empty")
        if not self.trusted_hosts:
            violations.append("TRUSTED_HOSTS must be configured in production")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Insecure production configuration: {joined}")
