import asyncio
import unittest

from voicecal.errors import StatusWaitTimeout
from voicecal.job_status import JobStatusStore
from voicecal.models import JOB_ERROR, JOB_PROCESSING, JOB_READY, JobStatus


class JobStatusStoreTests(unittest.IsolatedAsyncioTestCase):
    async def test_set_and_get(self) -> None:
        statuses = JobStatusStore()
        self.assertIsNone(statuses.get("evt_1"))
        statuses.set("evt_1", JobStatus(JOB_PROCESSING))
        self.assertEqual(statuses.get("evt_1").status, JOB_PROCESSING)

    async def test_wait_returns_terminal_status_immediately(self) -> None:
        statuses = JobStatusStore()
        statuses.set("evt_1", JobStatus(JOB_READY, audio_path="/tmp/x.wav"))
        status = await statuses.wait_for("evt_1", timeout=0.01)
        self.assertEqual(status.audio_path, "/tmp/x.wav")

    async def test_wait_times_out_while_processing(self) -> None:
        statuses = JobStatusStore()
        statuses.set("evt_1", JobStatus(JOB_PROCESSING))
        with self.assertRaises(StatusWaitTimeout) as ctx:
            await statuses.wait_for("evt_1", timeout=0.05)
        self.assertIsInstance(ctx.exception, TimeoutError)
        self.assertIn("evt_1", str(ctx.exception))

    async def test_all_waiters_wake_on_next_set(self) -> None:
        statuses = JobStatusStore()
        statuses.set("evt_1", JobStatus(JOB_PROCESSING))
        waiters = [asyncio.create_task(statuses.wait_for("evt_1", timeout=1.0)) for _ in range(3)]
        await asyncio.sleep(0)

        statuses.set("evt_1", JobStatus(JOB_ERROR, error="boom"))
        results = await asyncio.gather(*waiters)
        self.assertEqual([status.error for status in results], ["boom", "boom", "boom"])

    async def test_waiter_is_woken_once_even_by_non_terminal_status(self) -> None:
        statuses = JobStatusStore()
        waiter = asyncio.create_task(statuses.wait_for("evt_1", timeout=1.0))
        await asyncio.sleep(0)

        statuses.set("evt_1", JobStatus(JOB_PROCESSING))
        self.assertEqual((await waiter).status, JOB_PROCESSING)
        # A later set does not fail on the already resolved waiter.
        statuses.set("evt_1", JobStatus(JOB_READY))

    async def test_timed_out_waiter_is_unregistered(self) -> None:
        statuses = JobStatusStore()
        with self.assertRaises(StatusWaitTimeout):
            await statuses.wait_for("evt_1", timeout=0.01)
        self.assertEqual(statuses._waiters, {})

    async def test_discard_drops_status(self) -> None:
        statuses = JobStatusStore()
        statuses.set("evt_1", JobStatus(JOB_READY))
        statuses.discard("evt_1")
        self.assertIsNone(statuses.get("evt_1"))


if __name__ == "__main__":
    unittest.main()
