"""Filesystem watcher: debounced per-path events turned into uploads and deletes."""

from __future__ import annotations

import asyncio
import logging
import stat
from pathlib import Path
from typing import TYPE_CHECKING

from watchfiles import Change, awatch

from syncagent.scanner import is_hidden, to_rel_path, unsyncable_reason

if TYPE_CHECKING:
    from collections.abc import Callable

    from syncagent.reconciler import Reconciler

logger = logging.getLogger(__name__)


class Debouncer:
    """Collapse bursts of events per path into one callback after a quiet period.

    Every new event for a path resets that path's timer.
    """

    def __init__(self, delay: float, callback: Callable[[str], None]) -> None:
        self.delay = delay
        self.callback = callback
        self._handles: dict[str, asyncio.TimerHandle] = {}

    @property
    def pending(self) -> set[str]:
        return set(self._handles)

    def schedule(self, path: str) -> None:
        handle = self._handles.pop(path, None)
        if handle is not None:
            handle.cancel()
        loop = asyncio.get_running_loop()
        self._handles[path] = loop.call_later(self.delay, self._fire, path)

    def _fire(self, path: str) -> None:
        self._handles.pop(path, None)
        try:
            self.callback(path)
        except Exception:
            logger.exception("Handling settled change for %s failed", path)

    def flush(self) -> None:
        """Fire every pending path now."""
        for path in list(self._handles):
            handle = self._handles.get(path)
            if handle is not None:
                handle.cancel()
                self._fire(path)

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()


class FolderWatcher:
    """Watch the local root and hand settled changes to the reconciler."""

    def __init__(self, root: Path, reconciler: Reconciler, debounce: float = 2.0) -> None:
        self.root = root
        self.reconciler = reconciler
        self.debouncer = Debouncer(debounce, self.handle_settled)

    def filter_changes(self, change: Change, path: str) -> bool:
        """Keep visible paths under root whose names the server accepts.

        Temp siblings are hidden, so they are dropped here too.
        """
        rel = to_rel_path(self.root, Path(path))
        return rel is not None and not is_hidden(rel) and unsyncable_reason(rel) is None

    def handle_settled(self, rel_path: str) -> None:
        """Decide what a settled path needs based on what is on disk now."""
        full = self.root / rel_path
        try:
            st = full.lstat()
        except FileNotFoundError:
            self._handle_removed(rel_path)
            return
        except OSError as exc:
            logger.warning("Cannot stat %s: %s", rel_path, exc)
            return

        if stat.S_ISREG(st.st_mode):
            if not self.reconciler.submit_upload(rel_path):
                logger.debug("Upload of %s dropped, transfer in progress", rel_path)
        elif stat.S_ISDIR(st.st_mode):
            logger.debug("Ignoring directory event for %s", rel_path)
        else:
            logger.debug("Ignoring non-regular file %s", rel_path)

    def _handle_removed(self, rel_path: str) -> None:
        prefix = rel_path + "/"
        targets = [
            p for p in self.reconciler.known_paths if p == rel_path or p.startswith(prefix)
        ]
        if not targets:
            # Never seen by a scan; the server may still have it from another device.
            targets = [rel_path]
        for path in sorted(targets):
            if not self.reconciler.submit_delete(path):
                logger.debug("Delete of %s dropped, transfer in progress", path)

    async def run(self, stop: asyncio.Event) -> None:
        """Watch until stop is set."""
        logger.info("Watching %s for changes", self.root)
        try:
            async for changes in awatch(
                self.root,
                watch_filter=self.filter_changes,
                stop_event=stop,
                debounce=200,
                recursive=True,
            ):
                for _change, path in changes:
                    rel = to_rel_path(self.root, Path(path))
                    if rel is not None:
                        self.debouncer.schedule(rel)
        finally:
            self.debouncer.cancel_all()
