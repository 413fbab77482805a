"""Reconciler: diff the local tree against the server and execute the result."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, TypeVar

from syncagent.errors import (
    AuthenticationError,
    IntegrityError,
    PathRejectedError,
    RemoteNotFoundError,
    SyncError,
    TransientError,
)
from syncagent.retry import retry_transient
from syncagent.scanner import (
    cleanup_temp_files,
    hash_file,
    is_hidden,
    scan_local_files,
    temp_sibling,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from pathlib import Path

    from syncagent.api_client import DownloadResult, RemoteFile, SyncApiClient
    from syncagent.config import AgentConfig
    from syncagent.scanner import FileStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

DOWNLOAD_ATTEMPTS = 2


@dataclass
class ReconcileReport:
    """Outcome of one reconcile round."""

    uploaded: list[str] = field(default_factory=list)
    downloaded: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    auth_failed: bool = False

    @property
    def total(self) -> int:
        return len(self.uploaded) + len(self.downloaded) + len(self.deleted)


class PathLocks:
    """Per-path try-locks. Entries exist only while a path is busy."""

    def __init__(self) -> None:
        self._busy: set[str] = set()

    def try_acquire(self, path: str) -> bool:
        if path in self._busy:
            return False
        self._busy.add(path)
        return True

    def release(self, path: str) -> None:
        self._busy.discard(path)

    def is_busy(self, path: str) -> bool:
        return path in self._busy

    def __len__(self) -> int:
        return len(self._busy)


def resolve_local(root: Path, rel_path: str) -> Path | None:
    """Resolve a server-provided path inside root, or None if it escapes or is hidden."""
    if not rel_path or rel_path.startswith("/") or is_hidden(rel_path):
        return None
    if any(part == ".." for part in rel_path.split("/")):
        return None
    local_path = (root / rel_path).resolve()
    if not local_path.is_relative_to(root.resolve()):
        return None
    return root / rel_path


def _set_mtime(path: Path, updated_at: str) -> None:
    """Best-effort: give a downloaded file the server's modification time."""
    try:
        stamp = datetime.fromisoformat(updated_at).timestamp()
        os.utime(path, (stamp, stamp))
    except (ValueError, OSError) as exc:
        logger.debug("Could not set mtime on %s: %s", path, exc)


def _prune_empty_parents(root: Path, path: Path) -> None:
    parent = path.parent
    while parent != root and parent.is_relative_to(root):
        try:
            parent.rmdir()
        except OSError:
            return
        parent = parent.parent


class Reconciler:
    """Owns the API client, the per-path lock map, and the transfer pool."""

    def __init__(
        self,
        api: SyncApiClient,
        root: Path,
        client_id: str,
        *,
        max_concurrent_transfers: int = 4,
        retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
    ) -> None:
        self.api = api
        self.root = root
        self.client_id = client_id
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.locks = PathLocks()
        self.known_paths: set[str] = set()
        # Checksum each path had when last known to match the server.
        self.synced_checksums: dict[str, str] = {}
        self._transfer_slots = asyncio.Semaphore(max_concurrent_transfers)
        self._tasks: set[asyncio.Task[None]] = set()

    @classmethod
    def from_config(
        cls, config: AgentConfig, api: SyncApiClient, root: Path, client_id: str
    ) -> Reconciler:
        return cls(
            api,
            root,
            client_id,
            max_concurrent_transfers=config.max_concurrent_transfers,
            retry_attempts=config.retry_attempts,
            retry_base_delay=config.retry_base_delay_seconds,
        )

    async def startup(self) -> None:
        """Remove temp siblings left by a previous run that was interrupted mid-download."""
        await asyncio.to_thread(cleanup_temp_files, self.root)

    async def scan(self) -> list[FileStatus]:
        files = await asyncio.to_thread(scan_local_files, self.root)
        self.known_paths = {f.path for f in files}
        return files

    def _retry(self, fn: Callable[[], Awaitable[T]], label: str) -> Awaitable[T]:
        return retry_transient(
            fn, attempts=self.retry_attempts, base_delay=self.retry_base_delay, label=label
        )

    # ── Reconcile ────────────────────────────────────────

    async def reconcile(self) -> ReconcileReport:
        """Run one full round: scan, diff, upload and download, then delete.

        Raises AuthenticationError or TransientError when the diff itself cannot
        be obtained. Per-file failures are logged and recorded in the report.
        """
        files = await self.scan()
        diff = await self._retry(lambda: self.api.get_diff(self.client_id, files), "status")
        logger.info(
            "Diff: %d upload, %d download, %d delete",
            len(diff.upload),
            len(diff.download),
            len(diff.delete),
        )
        pending = set(diff.upload) | set(diff.delete) | {r.path for r in diff.download}
        for status in files:
            if status.path not in pending:
                self.synced_checksums[status.path] = status.checksum

        report = ReconcileReport()
        transfers = [
            self._guarded(path, lambda p=path: self._upload(p, report), report)
            for path in diff.upload
        ]
        transfers += [
            self._guarded(remote.path, lambda r=remote: self._download(r, report), report)
            for remote in diff.download
        ]
        await asyncio.gather(*transfers)

        for path in diff.delete:
            await self._guarded(path, lambda p=path: self._delete_local(p, report), report)

        logger.info(
            "Reconcile done: %d uploaded, %d downloaded, %d deleted, %d skipped, %d failed",
            len(report.uploaded),
            len(report.downloaded),
            len(report.deleted),
            len(report.skipped),
            len(report.failed),
        )
        return report

    async def run_periodic(self, stop: asyncio.Event, interval: float) -> None:
        """Reconcile every interval seconds until stop is set.

        Authentication failures end the loop. Any other error is logged and the
        next tick tries again.
        """
        while not stop.is_set():
            try:
                report = await self.reconcile()
            except AuthenticationError:
                raise
            except TransientError as exc:
                logger.warning("Reconcile deferred, server unreachable: %s", exc)
            except SyncError as exc:
                logger.error("Reconcile failed, retrying next interval: %s", exc)
            else:
                if report.auth_failed:
                    raise AuthenticationError("Server rejected credentials during transfer")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=interval)

    # ── Watcher entry points ─────────────────────────────

    def submit_upload(self, path: str) -> bool:
        """Schedule an upload of path. Returns False if the path is busy (dropped)."""
        return self._spawn(path, lambda: self._upload(path, None))

    def submit_delete(self, path: str) -> bool:
        """Schedule a server-side delete of path. Returns False if the path is busy."""
        return self._spawn(path, lambda: self._delete_remote(path))

    def _spawn(self, path: str, op: Callable[[], Awaitable[None]]) -> bool:
        if not self.locks.try_acquire(path):
            logger.debug("Transfer already running for %s, dropping event", path)
            return False
        task = asyncio.create_task(self._run_locked(path, op, None))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def drain(self) -> None:
        """Wait for every submitted transfer to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_pending(self) -> None:
        """Cancel in-flight submitted transfers (on shutdown)."""
        for task in list(self._tasks):
            task.cancel()
        await self.drain()

    # ── Per-path execution ───────────────────────────────

    async def _guarded(
        self,
        path: str,
        op: Callable[[], Awaitable[None]],
        report: ReconcileReport,
    ) -> None:
        if not self.locks.try_acquire(path):
            logger.debug("Skipping %s: transfer already in progress", path)
            report.skipped.append(path)
            return
        await self._run_locked(path, op, report)

    async def _run_locked(
        self,
        path: str,
        op: Callable[[], Awaitable[None]],
        report: ReconcileReport | None,
    ) -> None:
        """Run op for a path whose lock is held; log and record any failure."""
        try:
            async with self._transfer_slots:
                await op()
        except AuthenticationError as exc:
            logger.error("%s: authentication failed: %s", path, exc)
            if report is not None:
                report.failed.append(path)
                report.auth_failed = True
        except PathRejectedError as exc:
            logger.warning("%s: rejected by server, not retrying: %s", path, exc)
            if report is not None:
                report.failed.append(path)
        except (TransientError, RemoteNotFoundError, IntegrityError) as exc:
            logger.warning("%s: deferred to next reconcile: %s", path, exc)
            if report is not None:
                report.failed.append(path)
        except OSError as exc:
            logger.error("%s: local I/O error, skipped: %s", path, exc)
            if report is not None:
                report.failed.append(path)
        except Exception:
            logger.exception("%s: unexpected transfer failure", path)
            if report is not None:
                report.failed.append(path)
        finally:
            self.locks.release(path)

    async def _upload(self, path: str, report: ReconcileReport | None) -> None:
        local_path = resolve_local(self.root, path)
        if local_path is None:
            raise PathRejectedError(f"Refusing to upload unsafe path {path}")
        if not local_path.is_file() or local_path.is_symlink():
            logger.debug("%s vanished before upload", path)
            if report is not None:
                report.skipped.append(path)
            return

        if report is None:
            checksum = await asyncio.to_thread(hash_file, local_path)
            if self.synced_checksums.get(path) == checksum:
                logger.debug("%s unchanged since last sync, not uploading", path)
                return

        remote = await self._retry(lambda: self.api.upload(local_path, path), f"upload {path}")
        logger.info("Uploaded %s (version %d)", path, remote.version)
        self.known_paths.add(path)
        self.synced_checksums[path] = remote.checksum
        if report is not None:
            report.uploaded.append(path)

    async def _download(self, remote: RemoteFile, report: ReconcileReport | None) -> None:
        target = resolve_local(self.root, remote.path)
        if target is None:
            raise PathRejectedError(f"Refusing to download unsafe path {remote.path}")

        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        tmp = temp_sibling(target)
        try:
            for attempt in range(1, DOWNLOAD_ATTEMPTS + 1):
                with open(tmp, "wb") as fh:

                    async def fetch() -> DownloadResult:
                        fh.seek(0)
                        fh.truncate()
                        return await self.api.download(remote.id, fh)

                    result = await self._retry(fetch, f"download {remote.path}")
                    fh.flush()
                    os.fsync(fh.fileno())

                if result.checksum == remote.checksum:
                    break
                tmp.unlink(missing_ok=True)
                if attempt == DOWNLOAD_ATTEMPTS:
                    raise IntegrityError(
                        f"{remote.path}: checksum mismatch after {attempt} attempts "
                        f"(expected {remote.checksum}, got {result.checksum})"
                    )
                logger.warning("%s: checksum mismatch, retrying download", remote.path)

            os.replace(tmp, target)
        finally:
            tmp.unlink(missing_ok=True)

        _set_mtime(target, remote.updated_at)
        self.known_paths.add(remote.path)
        self.synced_checksums[remote.path] = remote.checksum
        logger.info("Downloaded %s (version %d)", remote.path, remote.version)
        if report is not None:
            report.downloaded.append(remote.path)

    async def _delete_local(self, path: str, report: ReconcileReport | None) -> None:
        target = resolve_local(self.root, path)
        if target is None:
            raise PathRejectedError(f"Refusing to delete unsafe path {path}")
        try:
            target.unlink()
        except FileNotFoundError:
            pass
        else:
            logger.info("Deleted local %s (removed on server)", path)
            _prune_empty_parents(self.root, target)
            if report is not None:
                report.deleted.append(path)
        self.known_paths.discard(path)
        self.synced_checksums.pop(path, None)

    async def _delete_remote(self, path: str) -> None:
        deleted = await self._retry(
            lambda: self.api.delete(self.client_id, path), f"delete {path}"
        )
        self.known_paths.discard(path)
        self.synced_checksums.pop(path, None)
        if deleted:
            logger.info("Deleted %s on server", path)
        else:
            logger.debug("%s was not on the server", path)
