from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class RetryExecutor:
    """Runs a coroutine factory with exponential backoff between attempts.

    Every failure is retried up to ``max_attempts`` unless its type is listed
    in ``fatal``. There is no jitter. When the budget is exhausted the last
    failure is raised unchanged.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        *,
        fatal: tuple[type[BaseException], ...] = (),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = max(0.0, float(base_delay))
        self.fatal = fatal
        self._sleep = sleep

    def backoff(self, attempt: int, base_delay: float | None = None) -> float:
        base = self.base_delay if base_delay is None else base_delay
        return base * (2 ** (attempt - 1))

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: int | None = None,
        base_delay: float | None = None,
    ) -> T:
        attempts = self.max_attempts if max_attempts is None else max(1, int(max_attempts))
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as exc:
                if self.fatal and isinstance(exc, self.fatal):
                    raise
                logger.warning("Attempt %d/%d failed: %s", attempt, attempts, exc)
                if attempt >= attempts:
                    raise
            wait_time = self.backoff(attempt, base_delay)
            logger.info("Retrying in %.3fs", wait_time)
            await self._sleep(wait_time)
            attempt += 1
