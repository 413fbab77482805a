"""HTTP client for the folder sync API."""

from __future__ import annotations

import hashlib
import logging
import mimetypes
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, BinaryIO
from urllib.parse import quote

import httpx

from syncagent.errors import (
    AuthenticationError,
    PathRejectedError,
    RemoteNotFoundError,
    SyncError,
    TransientError,
)

if TYPE_CHECKING:
    from pathlib import Path

    from syncagent.config import AgentConfig
    from syncagent.scanner import FileStatus

logger = logging.getLogger(__name__)

_TRANSIENT_STATUSES = {408, 425, 429}


@dataclass
class RemoteFile:
    """A server manifest entry as returned by the API."""

    id: str
    path: str
    checksum: str
    size: int
    version: int
    updated_at: str
    mime_type: str = "application/octet-stream"
    name: str = ""

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> RemoteFile:
        return cls(
            id=data["id"],
            path=data["path"],
            checksum=data["checksum"],
            size=int(data["size"]),
            version=int(data["version"]),
            updated_at=data["updated_at"],
            mime_type=data.get("mime_type") or "application/octet-stream",
            name=data.get("name") or data["path"].rsplit("/", 1)[-1],
        )


@dataclass
class RemoteDiff:
    """The server's answer to a status request."""

    upload: list[str] = field(default_factory=list)
    download: list[RemoteFile] = field(default_factory=list)
    delete: list[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> RemoteDiff:
        return cls(
            upload=list(data.get("upload", [])),
            download=[RemoteFile.from_json(item) for item in data.get("download", [])],
            delete=list(data.get("delete", [])),
        )

    def is_empty(self) -> bool:
        return not (self.upload or self.download or self.delete)


@dataclass
class DownloadResult:
    size: int
    checksum: str


def _detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return str(body)[:200]


def raise_for_status(resp: httpx.Response, context: str) -> None:
    """Translate an error response into the matching SyncError kind."""
    code = resp.status_code
    if code < 400:
        return
    detail = _detail(resp)
    message = f"{context}: HTTP {code}: {detail}"
    if code in (401, 403):
        raise AuthenticationError(message)
    if code == 404:
        raise RemoteNotFoundError(message)
    if code in _TRANSIENT_STATUSES or code >= 500:
        raise TransientError(message)
    if code in (400, 413, 422):
        raise PathRejectedError(message)
    raise SyncError(message)


class SyncApiClient:
    """Async client for one folder of the sync server."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        folder_id: str,
        *,
        request_timeout: float = 30.0,
        transfer_timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.folder_id = folder_id
        self.request_timeout = request_timeout
        self.transfer_timeout = transfer_timeout
        self._prefix = f"/api/sync/{quote(folder_id, safe='')}"
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            headers={"X-API-Key": api_key},
            timeout=request_timeout,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls, config: AgentConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> SyncApiClient:
        return cls(
            config.api_url,
            config.api_key,
            config.folder_id,
            request_timeout=config.request_timeout_seconds,
            transfer_timeout=config.transfer_timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> SyncApiClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    def _file_url(self, rel_path: str) -> str:
        return f"{self._prefix}/files/{quote(rel_path, safe='/')}"

    async def _request(self, method: str, url: str, context: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientError(f"{context}: timed out") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"{context}: {exc}") from exc
        raise_for_status(resp, context)
        return resp

    async def register(self, device_name: str) -> str:
        """Register this device and return its client id."""
        resp = await self._request(
            "POST", f"{self._prefix}/clients", "register", json={"deviceName": device_name}
        )
        client_id: str = resp.json()["id"]
        return client_id

    async def get_diff(self, client_id: str, files: list[FileStatus]) -> RemoteDiff:
        """Send the local tree and receive the diff."""
        resp = await self._request(
            "POST",
            f"{self._prefix}/status",
            "status",
            json={"clientId": client_id, "files": [f.to_json() for f in files]},
        )
        return RemoteDiff.from_json(resp.json())

    async def list_files(self) -> list[RemoteFile]:
        resp = await self._request("GET", f"{self._prefix}/files", "list")
        return [RemoteFile.from_json(item) for item in resp.json().get("files", [])]

    async def upload(self, local_path: Path, rel_path: str) -> RemoteFile:
        """Upload a whole file. Local read errors propagate as OSError."""
        mime_type = mimetypes.guess_type(rel_path)[0] or "application/octet-stream"
        with open(local_path, "rb") as fh:
            resp = await self._request(
                "POST",
                self._file_url(rel_path),
                f"upload {rel_path}",
                files={"file": (local_path.name, fh, mime_type)},
                timeout=self.transfer_timeout,
            )
        return RemoteFile.from_json(resp.json())

    async def download(self, file_id: str, dest: BinaryIO) -> DownloadResult:
        """Stream a blob into dest, hashing on the way."""
        url = f"{self._prefix}/files/{quote(file_id, safe='')}/blob"
        context = f"download {file_id}"
        sha = hashlib.sha256()
        size = 0
        try:
            async with self._client.stream("GET", url, timeout=self.transfer_timeout) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise_for_status(resp, context)
                async for chunk in resp.aiter_bytes():
                    sha.update(chunk)
                    dest.write(chunk)
                    size += len(chunk)
        except httpx.TimeoutException as exc:
            raise TransientError(f"{context}: timed out") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"{context}: {exc}") from exc
        return DownloadResult(size=size, checksum=sha.hexdigest())

    async def delete(self, client_id: str, rel_path: str) -> bool:
        """Delete a path on the server. Returns False if it was already gone."""
        try:
            await self._request(
                "DELETE",
                self._file_url(rel_path),
                f"delete {rel_path}",
                headers={"X-Client-Id": client_id},
            )
        except RemoteNotFoundError:
            return False
        return True
