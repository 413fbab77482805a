"""Folder administration schemas."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from syncserver.schemas.sync import ClientResponse


class FolderCreate(BaseModel):
    """Request to create a sync folder."""

    name: str = Field(min_length=1, max_length=200)


class FolderRename(BaseModel):
    """Request to rename a sync folder."""

    name: str = Field(min_length=1, max_length=200)


class FolderResponse(BaseModel):
    """A sync folder including its API key."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    api_key: str
    created_at: str
    updated_at: str


class FolderSummary(FolderResponse):
    """A sync folder with usage figures and registered clients."""

    file_count: int = Field(default=0, ge=0)
    total_size: int = Field(default=0, ge=0)
    clients: list[ClientResponse] = Field(default_factory=list)


class FolderListResponse(BaseModel):
    folders: list[FolderSummary]


class ApiKeyResponse(BaseModel):
    api_key: str
