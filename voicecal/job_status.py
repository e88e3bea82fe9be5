from __future__ import annotations

import asyncio
import logging

from voicecal.errors import StatusWaitTimeout
from voicecal.models import JobStatus

logger = logging.getLogger(__name__)


class JobStatusStore:
    """In-memory job status with a blocking wait for the next transition.

    A waiter is woken once, by the next ``set`` for its job, with whatever
    status that call stores. It does not check whether that status is
    terminal: the only non-terminal value is ``processing`` and nothing sets
    it again after a terminal state, so callers simply poll once more.
    """

    def __init__(self) -> None:
        self._statuses: dict[str, JobStatus] = {}
        self._waiters: dict[str, list[asyncio.Future[JobStatus]]] = {}

    def set(self, job_id: str, status: JobStatus) -> None:
        self._statuses[job_id] = status
        waiters = self._waiters.pop(job_id, [])
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(status)
        if waiters:
            logger.debug("Woke %d waiter(s) for %s with %s", len(waiters), job_id, status.status)

    def get(self, job_id: str) -> JobStatus | None:
        return self._statuses.get(job_id)

    def discard(self, job_id: str) -> None:
        # Waiters stay registered; they time out or see a later set.
        self._statuses.pop(job_id, None)

    async def wait_for(self, job_id: str, timeout: float = 30.0) -> JobStatus:
        current = self._statuses.get(job_id)
        if current is not None and current.is_terminal:
            return current

        waiter: asyncio.Future[JobStatus] = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(job_id, []).append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            raise StatusWaitTimeout(job_id, timeout) from None
        finally:
            pending = self._waiters.get(job_id)
            if pending and waiter in pending:
                pending.remove(waiter)
                if not pending:
                    del self._waiters[job_id]
