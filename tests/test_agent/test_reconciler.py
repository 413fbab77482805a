"""End-to-end reconciler tests against an in-process server."""

from __future__ import annotations

import asyncio
import hashlib
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any, BinaryIO
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from syncagent.api_client import DownloadResult, SyncApiClient
from syncagent.errors import AuthenticationError, PathRejectedError, TransientError
from syncagent.reconciler import PathLocks, Reconciler, ReconcileReport, resolve_local
from syncagent.scanner import temp_sibling
from tests.conftest import create_folder, create_test_app

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from fastapi import FastAPI

    from syncserver.config import Settings

PAST = 1_600_000_000


@pytest.fixture
async def server(test_settings: Settings) -> AsyncGenerator[FastAPI]:
    async with create_test_app(test_settings) as app:
        yield app


@pytest.fixture
async def folder(server: FastAPI) -> dict[str, Any]:
    async with AsyncClient(transport=ASGITransport(app=server), base_url="http://test") as ac:
        return await create_folder(ac)


@asynccontextmanager
async def make_agent(
    server: FastAPI, folder: dict[str, Any], root: Path, device: str, api_key: str | None = None
) -> AsyncGenerator[Reconciler]:
    root.mkdir(parents=True, exist_ok=True)
    api = SyncApiClient(
        "http://test",
        api_key or folder["api_key"],
        folder["id"],
        transport=ASGITransport(app=server),
    )
    async with api:
        client_id = await api.register(device) if api_key is None else "unregistered"
        reconciler = Reconciler(api, root, client_id, retry_attempts=2, retry_base_delay=0)
        await reconciler.startup()
        yield reconciler


async def server_paths(server: FastAPI, folder: dict[str, Any]) -> dict[str, dict[str, Any]]:
    async with AsyncClient(transport=ASGITransport(app=server), base_url="http://test") as ac:
        resp = await ac.get(
            f"/api/sync/{folder['id']}/files", headers={"X-API-Key": folder["api_key"]}
        )
    return {f["path"]: f for f in resp.json()["files"]}


def write(root: Path, rel: str, content: bytes, mtime: float | None = None) -> Path:
    target = root / rel
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(content)
    if mtime is not None:
        os.utime(target, (mtime, mtime))
    return target


class TestReconcileScenarios:
    @pytest.mark.asyncio
    async def test_fresh_sync_uploads_everything(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        root = tmp_path / "a"
        write(root, "a.txt", b"hello")
        write(root, "docs/b.md", b"# B")

        async with make_agent(server, folder, root, "laptop") as agent:
            report = await agent.reconcile()

        assert sorted(report.uploaded) == ["a.txt", "docs/b.md"]
        remote = await server_paths(server, folder)
        assert {p: f["version"] for p, f in remote.items()} == {"a.txt": 1, "docs/b.md": 1}
        assert remote["a.txt"]["checksum"] == hashlib.sha256(b"hello").hexdigest()

    @pytest.mark.asyncio
    async def test_second_reconcile_is_noop(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        root = tmp_path / "a"
        write(root, "a.txt", b"hello")
        async with make_agent(server, folder, root, "laptop") as agent:
            await agent.reconcile()
            again = await agent.reconcile()
        assert again.total == 0
        assert again.failed == []

    @pytest.mark.asyncio
    async def test_two_client_propagation(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        content = os.urandom(1024 * 1024)
        write(tmp_path / "a", "x.bin", content)

        async with make_agent(server, folder, tmp_path / "a", "laptop") as agent_a:
            await agent_a.reconcile()
        async with make_agent(server, folder, tmp_path / "b", "desktop") as agent_b:
            report = await agent_b.reconcile()

        assert report.downloaded == ["x.bin"]
        received = tmp_path / "b" / "x.bin"
        assert hashlib.sha256(received.read_bytes()).hexdigest() == hashlib.sha256(
            content
        ).hexdigest()
        assert not temp_sibling(received).exists()

    @pytest.mark.asyncio
    async def test_download_takes_server_mtime(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        write(tmp_path / "a", "a.txt", b"a")
        async with make_agent(server, folder, tmp_path / "a", "laptop") as agent_a:
            await agent_a.reconcile()
        async with make_agent(server, folder, tmp_path / "b", "desktop") as agent_b:
            await agent_b.reconcile()

        updated_at = (await server_paths(server, folder))["a.txt"]["updated_at"]
        expected = datetime.fromisoformat(updated_at).timestamp()
        assert abs((tmp_path / "b" / "a.txt").stat().st_mtime - expected) < 0.01

    @pytest.mark.asyncio
    async def test_last_writer_wins(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        root_a, root_b = tmp_path / "a", tmp_path / "b"
        write(root_a, "c.txt", b"base")
        async with (
            make_agent(server, folder, root_a, "laptop") as agent_a,
            make_agent(server, folder, root_b, "desktop") as agent_b,
        ):
            await agent_a.reconcile()
            await agent_b.reconcile()

            write(root_a, "c.txt", b"A", mtime=PAST + 10)
            write(root_b, "c.txt", b"B", mtime=PAST + 11)
            assert agent_b.submit_upload("c.txt")
            await agent_b.drain()
            assert agent_a.submit_upload("c.txt")
            await agent_a.drain()

            remote = (await server_paths(server, folder))["c.txt"]
            assert remote["version"] == 3
            assert remote["checksum"] == hashlib.sha256(b"A").hexdigest()

            report = await agent_b.reconcile()

        assert report.downloaded == ["c.txt"]
        assert (root_b / "c.txt").read_bytes() == b"A"

    @pytest.mark.asyncio
    async def test_deletion_propagates(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        root_a, root_b = tmp_path / "a", tmp_path / "b"
        write(root_a, "logs/old.log", b"log")
        write(root_a, "keep.txt", b"keep")
        async with (
            make_agent(server, folder, root_a, "laptop") as agent_a,
            make_agent(server, folder, root_b, "desktop") as agent_b,
        ):
            await agent_a.reconcile()
            await agent_b.reconcile()
            assert (root_b / "logs" / "old.log").exists()

            (root_a / "logs" / "old.log").unlink()
            assert agent_a.submit_delete("logs/old.log")
            await agent_a.drain()

            report = await agent_b.reconcile()

        assert report.deleted == ["logs/old.log"]
        assert not (root_b / "logs" / "old.log").exists()
        assert not (root_b / "logs").exists()
        assert (root_b / "keep.txt").exists()
        assert "logs/old.log" not in await server_paths(server, folder)

    @pytest.mark.asyncio
    async def test_interrupted_download_recovers(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        content = os.urandom(256 * 1024)
        write(tmp_path / "a", "big.bin", content)
        async with make_agent(server, folder, tmp_path / "a", "laptop") as agent_a:
            await agent_a.reconcile()

        root_b = tmp_path / "b"
        stale = temp_sibling(root_b / "big.bin")
        stale.parent.mkdir(parents=True)
        stale.write_bytes(content[: len(content) // 2])

        async with make_agent(server, folder, root_b, "desktop") as agent_b:
            assert not stale.exists()
            report = await agent_b.reconcile()

        assert report.downloaded == ["big.bin"]
        assert (root_b / "big.bin").read_bytes() == content


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_wrong_key_is_fatal(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        write(tmp_path / "a", "a.txt", b"a")
        async with make_agent(
            server, folder, tmp_path / "a", "laptop", api_key="sync_" + "0" * 32
        ) as agent:
            with pytest.raises(AuthenticationError):
                await agent.reconcile()

    @pytest.mark.asyncio
    async def test_checksum_mismatch_retried_then_deferred(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        write(tmp_path / "a", "a.txt", b"genuine")
        async with make_agent(server, folder, tmp_path / "a", "laptop") as agent_a:
            await agent_a.reconcile()

        async def corrupt(file_id: str, dest: BinaryIO) -> DownloadResult:
            dest.write(b"garbage")
            return DownloadResult(size=7, checksum=hashlib.sha256(b"garbage").hexdigest())

        root_b = tmp_path / "b"
        async with make_agent(server, folder, root_b, "desktop") as agent_b:
            agent_b.api.download = AsyncMock(side_effect=corrupt)  # type: ignore[method-assign]
            report = await agent_b.reconcile()

        assert agent_b.api.download.await_count == 2
        assert report.failed == ["a.txt"]
        assert not (root_b / "a.txt").exists()
        assert not temp_sibling(root_b / "a.txt").exists()

    @pytest.mark.asyncio
    async def test_transient_upload_failure_does_not_stop_others(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        root = tmp_path / "a"
        write(root, "bad.txt", b"bad")
        write(root, "good.txt", b"good")

        async with make_agent(server, folder, root, "laptop") as agent:
            real_upload = agent.api.upload

            async def flaky(local_path: Path, rel_path: str) -> Any:
                if rel_path == "bad.txt":
                    raise TransientError("503")
                return await real_upload(local_path, rel_path)

            agent.api.upload = AsyncMock(side_effect=flaky)  # type: ignore[method-assign]
            report = await agent.reconcile()

        assert report.uploaded == ["good.txt"]
        assert report.failed == ["bad.txt"]
        assert not agent.locks.is_busy("bad.txt")

    @pytest.mark.asyncio
    async def test_local_write_failure_is_skipped(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        write(tmp_path / "a", "x.bin", b"data")
        async with make_agent(server, folder, tmp_path / "a", "laptop") as agent_a:
            await agent_a.reconcile()

        root_b = tmp_path / "b"
        (root_b / "x.bin").mkdir(parents=True)
        async with make_agent(server, folder, root_b, "desktop") as agent_b:
            report = await agent_b.reconcile()

        assert report.failed == ["x.bin"]
        assert (root_b / "x.bin").is_dir()
        assert not temp_sibling(root_b / "x.bin").exists()

    @pytest.mark.asyncio
    async def test_unsyncable_names_do_not_block_the_folder(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        root = tmp_path / "a"
        write(root, "good.txt", b"good")
        write(root, "c:notes.txt", b"drive-like")
        write(root, "a\\b.txt", b"backslash")

        async with make_agent(server, folder, root, "laptop") as agent:
            first = await agent.reconcile()
            second = await agent.reconcile()

        assert first.uploaded == ["good.txt"]
        assert first.failed == []
        assert second.total == 0
        assert second.skipped == []
        assert set(await server_paths(server, folder)) == {"good.txt"}
        assert (root / "a\\b.txt").read_bytes() == b"backslash"

    @pytest.mark.asyncio
    async def test_failed_download_keeps_previous_content(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        new = os.urandom(64 * 1024)
        write(tmp_path / "a", "x.bin", new)
        async with make_agent(server, folder, tmp_path / "a", "laptop") as agent_a:
            await agent_a.reconcile()

        root_b = tmp_path / "b"
        write(root_b, "x.bin", b"old bytes", mtime=PAST)

        async def cut_off(file_id: str, dest: BinaryIO) -> DownloadResult:
            dest.write(new[: len(new) // 2])
            raise TransientError("connection reset mid-body")

        async with make_agent(server, folder, root_b, "desktop") as agent_b:
            agent_b.api.download = AsyncMock(side_effect=cut_off)  # type: ignore[method-assign]
            report = await agent_b.reconcile()

        assert report.failed == ["x.bin"]
        assert (root_b / "x.bin").read_bytes() == b"old bytes"
        assert not temp_sibling(root_b / "x.bin").exists()
        assert sorted(p.name for p in root_b.iterdir()) == ["x.bin"]

    @pytest.mark.asyncio
    async def test_periodic_loop_survives_rejected_round(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        stop = asyncio.Event()
        rounds = 0

        async def reconcile_once() -> ReconcileReport:
            nonlocal rounds
            rounds += 1
            if rounds == 1:
                raise PathRejectedError("status rejected: 400")
            stop.set()
            return ReconcileReport()

        async with make_agent(server, folder, tmp_path / "a", "laptop") as agent:
            agent.reconcile = AsyncMock(side_effect=reconcile_once)  # type: ignore[method-assign]
            await asyncio.wait_for(agent.run_periodic(stop, interval=0), timeout=5)

        assert agent.reconcile.await_count == 2


class TestWatcherEntryPoints:
    @pytest.mark.asyncio
    async def test_busy_path_is_dropped(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        write(tmp_path / "a", "a.txt", b"a")
        async with make_agent(server, folder, tmp_path / "a", "laptop") as agent:
            assert agent.locks.try_acquire("a.txt")
            assert agent.submit_upload("a.txt") is False
            agent.locks.release("a.txt")
            assert agent.submit_upload("a.txt") is True
            await agent.drain()
        assert "a.txt" in await server_paths(server, folder)
        assert len(agent.locks) == 0

    @pytest.mark.asyncio
    async def test_unchanged_file_is_not_reuploaded(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        write(tmp_path / "a", "a.txt", b"a")
        async with make_agent(server, folder, tmp_path / "a", "laptop") as agent:
            await agent.reconcile()
            agent.submit_upload("a.txt")
            await agent.drain()
        assert (await server_paths(server, folder))["a.txt"]["version"] == 1

    @pytest.mark.asyncio
    async def test_delete_of_unknown_path_is_harmless(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        async with make_agent(server, folder, tmp_path / "a", "laptop") as agent:
            assert agent.submit_delete("never-synced.txt")
            await agent.drain()
        assert await server_paths(server, folder) == {}

    @pytest.mark.asyncio
    async def test_cancel_pending_releases_locks(
        self, server: FastAPI, folder: dict[str, Any], tmp_path: Path
    ) -> None:
        write(tmp_path / "a", "slow.txt", b"slow")
        started = asyncio.Event()

        async def hang(local_path: Path, rel_path: str) -> Any:
            started.set()
            await asyncio.Event().wait()

        async with make_agent(server, folder, tmp_path / "a", "laptop") as agent:
            agent.api.upload = AsyncMock(side_effect=hang)  # type: ignore[method-assign]
            assert agent.submit_upload("slow.txt")
            await asyncio.wait_for(started.wait(), timeout=5)
            assert agent.locks.is_busy("slow.txt")

            await agent.cancel_pending()

        assert len(agent.locks) == 0
        assert "slow.txt" not in await server_paths(server, folder)


class TestPathSafety:
    def test_path_locks(self) -> None:
        locks = PathLocks()
        assert locks.try_acquire("a")
        assert not locks.try_acquire("a")
        assert locks.try_acquire("b")
        locks.release("a")
        assert not locks.is_busy("a")
        assert len(locks) == 1

    @pytest.mark.parametrize("bad", ["", "/etc/passwd", "../x", "a/../../x", ".hidden", "a/.b"])
    def test_resolve_local_rejects_escapes(self, tmp_path: Path, bad: str) -> None:
        assert resolve_local(tmp_path, bad) is None

    def test_resolve_local_accepts_nested(self, tmp_path: Path) -> None:
        assert resolve_local(tmp_path, "a/b.txt") == tmp_path / "a" / "b.txt"
