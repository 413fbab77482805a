"""FolderSync agent CLI."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import logging
import signal
import socket
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from syncagent.api_client import SyncApiClient
from syncagent.config import (
    AgentConfig,
    check_local_path,
    default_config_path,
    load_config,
    save_config,
    split_api_url,
    validate_server_url,
)
from syncagent.errors import EXIT_AUTH, EXIT_NETWORK, EXIT_OK, ConfigError, SyncError
from syncagent.reconciler import Reconciler
from syncagent.watcher import FolderWatcher

if TYPE_CHECKING:
    import httpx

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.getLogger("watchfiles").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="foldersync",
        description="Keep a local directory in sync with a FolderSync server",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=None,
        help="Config file (default: $FOLDERSYNC_CONFIG or ~/.config/foldersync/config.json)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")

    setup = subparsers.add_parser("setup", help="Write the config and register this device")
    setup.add_argument("--api-url", required=True, help="Server URL or .../api/sync/<folder_id>")
    setup.add_argument("--api-key", required=True, help="Folder API key")
    setup.add_argument("--folder-id", help="Folder id (if not part of --api-url)")
    setup.add_argument("--local-path", required=True, type=Path, help="Directory to sync")
    setup.add_argument("--device-name", default=None, help="Device name (default: hostname)")
    setup.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )

    subparsers.add_parser("register", help="Register this device (again)")
    subparsers.add_parser("sync", help="Run one reconcile and exit")
    subparsers.add_parser("start", help="Sync, then watch for changes until interrupted")
    subparsers.add_parser("status", help="Show what a sync would do")
    subparsers.add_parser("list", help="List files on the server")
    return parser


async def _ensure_client(
    config: AgentConfig, config_path: Path, api: SyncApiClient
) -> AgentConfig:
    """Register the device if the config has no client id yet."""
    if config.client_id:
        return config
    client_id = await api.register(config.device_name)
    config = dataclasses.replace(config, client_id=client_id)
    save_config(config_path, config)
    logger.info("Registered device %r as client %s", config.device_name, client_id)
    return config


async def _cmd_setup(
    args: argparse.Namespace, config_path: Path, transport: httpx.AsyncBaseTransport | None
) -> int:
    base_url, url_folder_id = split_api_url(args.api_url)
    base_url = validate_server_url(base_url, args.allow_insecure_http)
    folder_id = args.folder_id or url_folder_id
    if not folder_id:
        raise ConfigError("A folder id is required: pass --folder-id or an api-url ending in it")

    local_path = args.local_path.expanduser().resolve()
    config = AgentConfig(
        api_url=base_url,
        api_key=args.api_key,
        local_path=local_path,
        device_name=args.device_name or socket.gethostname(),
        folder_id=folder_id,
    )
    local_path.mkdir(parents=True, exist_ok=True)
    check_local_path(config)

    async with SyncApiClient.from_config(config, transport=transport) as api:
        config = await _ensure_client(config, config_path, api)
    print(f"Configured {local_path} for folder {folder_id}")
    print(f"Config written to {config_path}")
    return EXIT_OK


async def _cmd_register(
    config: AgentConfig, config_path: Path, transport: httpx.AsyncBaseTransport | None
) -> int:
    async with SyncApiClient.from_config(config, transport=transport) as api:
        config = dataclasses.replace(config, client_id=None)
        config = await _ensure_client(config, config_path, api)
    print(f"Registered as client {config.client_id}")
    return EXIT_OK


async def _cmd_sync(
    config: AgentConfig, config_path: Path, transport: httpx.AsyncBaseTransport | None
) -> int:
    root = check_local_path(config)
    async with SyncApiClient.from_config(config, transport=transport) as api:
        config = await _ensure_client(config, config_path, api)
        assert config.client_id is not None
        reconciler = Reconciler.from_config(config, api, root, config.client_id)
        await reconciler.startup()
        report = await reconciler.reconcile()

    print(
        f"Sync complete. {len(report.uploaded)} uploaded, {len(report.downloaded)} downloaded, "
        f"{len(report.deleted)} deleted, {len(report.failed)} failed."
    )
    for path in report.failed:
        print(f"  Failed: {path}")
    if report.auth_failed:
        return EXIT_AUTH
    if report.failed:
        return EXIT_NETWORK
    return EXIT_OK


def _log_watcher_exit(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "File watcher stopped, changes are picked up by periodic sync only: %r", exc
        )


async def _cmd_start(
    config: AgentConfig, config_path: Path, transport: httpx.AsyncBaseTransport | None
) -> int:
    root = check_local_path(config)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    async with SyncApiClient.from_config(config, transport=transport) as api:
        config = await _ensure_client(config, config_path, api)
        assert config.client_id is not None
        reconciler = Reconciler.from_config(config, api, root, config.client_id)
        await reconciler.startup()
        watcher = FolderWatcher(root, reconciler, debounce=config.debounce_seconds)

        watch_task = asyncio.create_task(watcher.run(stop))
        watch_task.add_done_callback(_log_watcher_exit)
        try:
            await reconciler.run_periodic(stop, config.sync_interval_seconds)
        finally:
            stop.set()
            await watch_task
            await reconciler.cancel_pending()
    logger.info("Agent stopped")
    return EXIT_OK


async def _cmd_status(
    config: AgentConfig, config_path: Path, transport: httpx.AsyncBaseTransport | None
) -> int:
    root = check_local_path(config)
    async with SyncApiClient.from_config(config, transport=transport) as api:
        config = await _ensure_client(config, config_path, api)
        assert config.client_id is not None
        reconciler = Reconciler.from_config(config, api, root, config.client_id)
        files = await reconciler.scan()
        diff = await api.get_diff(config.client_id, files)

    print("Sync Status:")
    print(f"  To upload:       {len(diff.upload)}")
    print(f"  To download:     {len(diff.download)}")
    print(f"  To delete local: {len(diff.delete)}")
    for path in diff.upload:
        print(f"    + {path} (upload)")
    for remote in diff.download:
        print(f"    < {remote.path} (download)")
    for path in diff.delete:
        print(f"    - {path} (delete local)")
    return EXIT_OK


async def _cmd_list(config: AgentConfig, transport: httpx.AsyncBaseTransport | None) -> int:
    async with SyncApiClient.from_config(config, transport=transport) as api:
        files = await api.list_files()
    for remote in files:
        print(f"{remote.size:>12}  v{remote.version:<4} {remote.updated_at}  {remote.path}")
    print(f"{len(files)} file(s)")
    return EXIT_OK


async def _dispatch(
    args: argparse.Namespace, transport: httpx.AsyncBaseTransport | None
) -> int:
    config_path: Path = args.config or default_config_path()
    if args.command == "setup":
        return await _cmd_setup(args, config_path, transport)

    config = load_config(config_path)
    if args.command == "register":
        return await _cmd_register(config, config_path, transport)
    if args.command == "sync":
        return await _cmd_sync(config, config_path, transport)
    if args.command == "start":
        return await _cmd_start(config, config_path, transport)
    if args.command == "status":
        return await _cmd_status(config, config_path, transport)
    return await _cmd_list(config, transport)


def run(argv: list[str] | None = None, transport: httpx.AsyncBaseTransport | None = None) -> int:
    """Parse arguments, run the command, and return the exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_OK

    _configure_logging(args.verbose)
    try:
        return asyncio.run(_dispatch(args, transport))
    except SyncError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return exc.exit_code
    except KeyboardInterrupt:
        return EXIT_OK


def main() -> None:
    """CLI entry point."""
    code = run()
    if code != EXIT_OK:
        sys.exit(code)


if __name__ == "__main__":
    main()
