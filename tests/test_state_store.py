import tempfile
import unittest
from pathlib import Path

from voicecal.models import JOB_ERROR, JOB_READY, JobStatus
from voicecal.state_store import StateStore


class StateStoreTests(unittest.TestCase):
    def test_job_results_round_trip_and_upsert(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = StateStore(str(Path(tmp) / "nested" / "state.db"))
            store.record_job_result("evt_1", "audio", JobStatus(JOB_ERROR, error="boom"))
            store.record_job_result("evt_1", "audio", JobStatus(JOB_READY, linked_event_id="abc", operation="created"))

            result = store.get_job_result("evt_1")
            self.assertEqual(result, JobStatus(JOB_READY, linked_event_id="abc", operation="created"))
            self.assertIsNone(store.get_job_result("missing"))

            recent = store.recent_job_results()
            self.assertEqual(len(recent), 1)
            self.assertEqual(recent[0]["kind"], "audio")
            self.assertEqual(recent[0]["result"]["operation"], "created")

            store.delete_job_result("evt_1")
            self.assertIsNone(store.get_job_result("evt_1"))

    def test_audit_events_filter_by_job(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = StateStore(str(Path(tmp) / "state.db"))
            store.record_audit_event(event_id="a", action="created", details={"title": "Gym"}, job_id="evt_1")
            store.record_audit_event(event_id="b", action="deleted", details={"scope": None}, job_id="evt_2")

            events = store.recent_audit_events()
            self.assertEqual([event["event_id"] for event in events], ["b", "a"])
            self.assertEqual(events[1]["details"], {"title": "Gym"})

            only_first = store.recent_audit_events(job_id="evt_1")
            self.assertEqual(len(only_first), 1)
            self.assertEqual(only_first[0]["action"], "created")


if __name__ == "__main__":
    unittest.main()
