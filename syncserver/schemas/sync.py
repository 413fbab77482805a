"""Sync protocol wire schemas."""

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class FileStatus(BaseModel):
    """One file as seen by a client scan."""

    path: str = Field(min_length=1)
    checksum: str = Field(pattern=r"^[0-9a-f]{64}$")
    size: int = Field(ge=0)
    modified_at: str = Field(validation_alias=AliasChoices("modified_at", "modifiedAt"))


class SyncStatusRequest(BaseModel):
    """A client's full tree, sent to compute a diff."""

    client_id: str = Field(min_length=1, validation_alias=AliasChoices("clientId", "client_id"))
    files: list[FileStatus] = Field(default_factory=list)


class RegisterClientRequest(BaseModel):
    """Request to register a device against a folder."""

    device_name: str = Field(
        min_length=1,
        max_length=200,
        validation_alias=AliasChoices("deviceName", "device_name"),
    )


class ClientResponse(BaseModel):
    """A registered sync client."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    folder_id: str
    device_name: str
    created_at: str
    last_sync_at: str | None = None


class SyncFileResponse(BaseModel):
    """A server manifest entry."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    folder_id: str
    path: str
    name: str
    mime_type: str
    size: int
    checksum: str
    version: int
    created_at: str
    updated_at: str


class SyncDiffResponse(BaseModel):
    """Actions the client must take to converge with the server."""

    upload: list[str] = Field(default_factory=list)
    download: list[SyncFileResponse] = Field(default_factory=list)
    delete: list[str] = Field(default_factory=list)


class FileListResponse(BaseModel):
    """All manifest entries of a folder."""

    files: list[SyncFileResponse]


class DeleteFileResponse(BaseModel):
    """Result of an explicit delete."""

    deleted: bool
    path: str
