"""Retry helper for network operations."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, TypeVar

from syncagent.errors import TransientError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_DELAY_SECONDS = 60.0


async def retry_transient(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    label: str,
) -> T:
    """Await fn, retrying TransientError up to attempts times with exponential back-off.

    Delays double from base_delay (1s, 2s, 4s, ...). Other errors propagate at
    once; the last TransientError is re-raised.
    """
    delay = base_delay
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except TransientError as exc:
            if attempt == attempts:
                raise
            logger.warning("%s failed (attempt %d/%d): %s", label, attempt, attempts, exc)
            logger.debug("  retrying in %.1fs", delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, MAX_DELAY_SECONDS)
    raise AssertionError("unreachable")
