from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


class JobLock:
    """Single-flight lock keyed by job.

    ``try_acquire`` never blocks. Other tasks may ``wait`` for a key to be
    released. There is no re-entrancy and no ordering among waiters.
    """

    def __init__(self) -> None:
        self._released: dict[str, asyncio.Event] = {}

    def try_acquire(self, key: str) -> bool:
        if key in self._released:
            logger.debug("Job %s is already being processed, skipping", key)
            return False
        self._released[key] = asyncio.Event()
        logger.debug("Lock acquired for %s", key)
        return True

    def release(self, key: str) -> None:
        event = self._released.pop(key, None)
        if event is None:
            return
        event.set()
        logger.debug("Lock released for %s", key)

    def is_held(self, key: str) -> bool:
        return key in self._released

    async def wait(self, key: str, timeout: float = 30.0) -> bool:
        event = self._released.get(key)
        if event is None:
            return True
        try:
            await asyncio.wait_for(event.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            logger.warning("Timeout waiting for lock %s after %.1fs", key, timeout)
            return False
        return True
