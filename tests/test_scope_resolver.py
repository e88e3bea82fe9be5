import asyncio
import unittest
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from fakes import FakeSeriesStore, utc, weekly_series
from voicecal.errors import InputError, NotFoundError, RemoteTransientError
from voicecal.models import (
    SCOPE_ALL_EVENTS,
    SCOPE_THIS_AND_FOLLOWING,
    SCOPE_THIS_EVENT,
    STATUS_CANCELLED,
    CalendarEvent,
    ScopeRequest,
)
from voicecal.retry import RetryExecutor
from voicecal.scope_resolver import RecurrenceScopeResolver, normalize_fields

RULE = "RRULE:FREQ=WEEKLY;BYDAY=MO"
MARCH_10 = "series-1_20250310T090000Z"


def make_resolver(store: FakeSeriesStore) -> RecurrenceScopeResolver:
    return RecurrenceScopeResolver(
        store,
        retry=RetryExecutor(3, 0.0, fatal=(InputError, NotFoundError)),
        clock=lambda: utc(2025, 1, 1),
    )


def single_event(event_id: str = "single") -> CalendarEvent:
    return CalendarEvent(id=event_id, title="Dentist", start=utc(2025, 1, 2, 10), end=utc(2025, 1, 2, 11))


class NormalizeFieldsTests(unittest.TestCase):
    def test_drops_unknown_and_empty_fields_and_parses_times(self) -> None:
        fields = normalize_fields(
            {"title": "Gym", "start": "2025-01-02T10:00:00.000Z", "end": None, "color": "red"}
        )
        self.assertEqual(fields, {"title": "Gym", "start": utc(2025, 1, 2, 10)})

    def test_invalid_timestamp_is_input_error(self) -> None:
        with self.assertRaises(InputError):
            normalize_fields({"start": "tomorrow-ish"})


class UpdateTests(unittest.IsolatedAsyncioTestCase):
    async def test_single_event_update_ignores_scope(self) -> None:
        store = FakeSeriesStore([single_event()])
        outcome = await make_resolver(store).update(
            ScopeRequest("single", SCOPE_ALL_EVENTS, {"title": "Dentist (moved)"})
        )
        self.assertEqual(outcome.operation, "updated")
        self.assertIsNone(outcome.scope)
        self.assertEqual(store.events["single"].title, "Dentist (moved)")

    async def test_recurring_target_requires_scope(self) -> None:
        store = FakeSeriesStore(weekly_series())
        with self.assertRaises(InputError):
            await make_resolver(store).update(ScopeRequest(MARCH_10, None, {"title": "x"}))
        self.assertEqual(store.calls_to("update_event"), [])

    async def test_this_event_updates_only_the_instance(self) -> None:
        store = FakeSeriesStore(weekly_series())
        outcome = await make_resolver(store).update(
            ScopeRequest(MARCH_10, SCOPE_THIS_EVENT, {"title": "Retro", "recurrence": ["RRULE:FREQ=DAILY"]})
        )
        self.assertEqual(outcome.label, "updated (this_event)")
        self.assertEqual(store.calls_to("update_event"), [("update_event", MARCH_10, {"title": "Retro"})])
        self.assertEqual(store.events[MARCH_10].title, "Retro")
        self.assertEqual(store.events["series-1"].title, "Standup")

    async def test_this_event_rejects_series_master(self) -> None:
        store = FakeSeriesStore(weekly_series())
        with self.assertRaises(InputError):
            await make_resolver(store).update(ScopeRequest("series-1", SCOPE_THIS_EVENT, {"title": "x"}))

    async def test_all_events_patches_master_and_keeps_recurrence(self) -> None:
        store = FakeSeriesStore(weekly_series())
        outcome = await make_resolver(store).update(
            ScopeRequest(MARCH_10, SCOPE_ALL_EVENTS, {"title": "Daily sync", "start": "2025-03-10T12:00:00Z"})
        )
        self.assertEqual(outcome.event.id, "series-1")
        self.assertEqual(
            store.calls_to("update_event"),
            [("update_event", "series-1", {"title": "Daily sync", "recurrence": [RULE]})],
        )
        self.assertEqual(store.events["series-1"].start, utc(2025, 1, 6, 9))

    async def test_this_and_following_splits_the_series(self) -> None:
        store = FakeSeriesStore(weekly_series())
        resolver = make_resolver(store)

        outcome = await resolver.update(ScopeRequest(MARCH_10, SCOPE_THIS_AND_FOLLOWING, {"title": "Planning"}))
        await resolver.wait_for_cleanup()

        self.assertEqual(outcome.label, "updated (this_and_following)")
        self.assertEqual(outcome.plan.cutoff_instant, utc(2025, 3, 9, 23, 59, 59))

        master = store.events["series-1"]
        self.assertEqual(master.recurrence, [RULE + ";UNTIL=20250309T235959Z"])
        self.assertEqual(master.title, "Standup")
        self.assertEqual(master.start, utc(2025, 1, 6, 9))

        created = store.events[outcome.event.id]
        self.assertEqual(created.title, "Planning")
        self.assertEqual(created.location, "Room 1")
        self.assertEqual(created.recurrence, [RULE])
        self.assertEqual(created.start, utc(2025, 3, 10, 9))
        self.assertEqual(created.end, utc(2025, 3, 10, 10))

        methods = [call[0] for call in store.calls if call[0] in ("update_event", "create_event")]
        self.assertEqual(methods, ["update_event", "create_event"])
        self.assertEqual(store.calls_to("update_event")[0][2], {"recurrence": [RULE + ";UNTIL=20250309T235959Z"]})

        # The old series' occurrence on the transition day was removed.
        self.assertNotIn(MARCH_10, store.events)
        self.assertIn("series-1_20250303T090000Z", store.events)

    async def test_this_and_following_with_new_start(self) -> None:
        store = FakeSeriesStore(weekly_series())
        resolver = make_resolver(store)
        outcome = await resolver.update(
            ScopeRequest(MARCH_10, SCOPE_THIS_AND_FOLLOWING, {"start": "2025-03-10T15:00:00Z"})
        )
        await resolver.wait_for_cleanup()

        self.assertEqual(outcome.event.start, utc(2025, 3, 10, 15))
        self.assertEqual(outcome.event.end, utc(2025, 3, 10, 16))
        self.assertEqual(outcome.event.title, "Standup")

    async def test_this_and_following_keeps_master_anchor_and_zone(self) -> None:
        madrid = ZoneInfo("Europe/Madrid")
        store = FakeSeriesStore(weekly_series(first_start=datetime(2025, 1, 6, 9, tzinfo=madrid)))
        resolver = make_resolver(store)

        outcome = await resolver.update(
            ScopeRequest("series-1_20250310T080000Z", SCOPE_THIS_AND_FOLLOWING, {"start": "2025-03-10T14:00:00Z"})
        )
        await resolver.wait_for_cleanup()

        self.assertEqual(
            store.calls_to("update_event"),
            [("update_event", "series-1", {"recurrence": [RULE + ";UNTIL=20250309T235959Z"]})],
        )
        master = store.events["series-1"]
        self.assertEqual(str(master.start.tzinfo), "Europe/Madrid")
        self.assertEqual(master.start, datetime(2025, 1, 6, 9, tzinfo=madrid))

        created = store.events[outcome.event.id]
        self.assertEqual(str(created.start.tzinfo), "Europe/Madrid")
        self.assertEqual(created.start, datetime(2025, 3, 10, 15, tzinfo=madrid))
        self.assertEqual(created.end, datetime(2025, 3, 10, 16, tzinfo=madrid))

    async def test_this_and_following_honours_cleared_fields(self) -> None:
        events = weekly_series()
        events[0] = events[0].with_updates(description="Agenda", attendees=["ana@example.com"])
        store = FakeSeriesStore(events)
        resolver = make_resolver(store)

        outcome = await resolver.update(
            ScopeRequest(MARCH_10, SCOPE_THIS_AND_FOLLOWING, {"description": "", "attendees": []})
        )
        await resolver.wait_for_cleanup()

        created = store.events[outcome.event.id]
        self.assertEqual(created.description, "")
        self.assertEqual(created.attendees, [])
        self.assertEqual(created.location, "Room 1")

    async def test_this_and_following_rejects_master_and_rule_less_series(self) -> None:
        store = FakeSeriesStore(weekly_series(rule="RDATE:20250106T090000Z"))
        resolver = make_resolver(store)
        with self.assertRaises(InputError):
            await resolver.update(ScopeRequest("series-1", SCOPE_THIS_AND_FOLLOWING, {"title": "x"}))
        with self.assertRaises(InputError):
            await resolver.update(ScopeRequest(MARCH_10, SCOPE_THIS_AND_FOLLOWING, {"title": "x"}))
        self.assertEqual(store.calls_to("create_event"), [])

    async def test_cleanup_failure_does_not_fail_the_split(self) -> None:
        store = FakeSeriesStore(weekly_series())
        store.fail("list_events", *[RemoteTransientError("calendar down")] * 3)
        resolver = make_resolver(store)

        with self.assertLogs("voicecal.scope_resolver", "WARNING") as logs:
            outcome = await resolver.update(ScopeRequest(MARCH_10, SCOPE_THIS_AND_FOLLOWING, {"title": "Planning"}))
            await resolver.wait_for_cleanup()

        self.assertEqual(outcome.operation, "updated")
        self.assertIn(outcome.event.id, store.events)
        self.assertTrue(any("cleanup" in line for line in logs.output))
        self.assertEqual(len(store.calls_to("list_events")), 3)

    async def test_transient_failures_are_retried(self) -> None:
        store = FakeSeriesStore([single_event()])
        store.fail("update_event", RemoteTransientError("503"))
        await make_resolver(store).update(ScopeRequest("single", None, {"title": "Later"}))
        self.assertEqual(len(store.calls_to("update_event")), 2)
        self.assertEqual(store.events["single"].title, "Later")

    async def test_not_found_is_not_retried(self) -> None:
        store = FakeSeriesStore()
        with self.assertRaises(NotFoundError):
            await make_resolver(store).update(ScopeRequest("missing", None, {"title": "x"}))
        self.assertEqual(len(store.calls_to("get_event")), 1)


class DeleteTests(unittest.IsolatedAsyncioTestCase):
    async def test_single_delete_is_idempotent(self) -> None:
        store = FakeSeriesStore([single_event()])
        resolver = make_resolver(store)

        first = await resolver.delete(ScopeRequest("single"))
        second = await resolver.delete(ScopeRequest("single"))

        self.assertFalse(first.already_satisfied)
        self.assertTrue(second.already_satisfied)
        self.assertEqual(len(store.calls_to("delete_event")), 1)

    async def test_concurrent_deletes_both_succeed(self) -> None:
        store = FakeSeriesStore([single_event()])
        resolver = make_resolver(store)

        outcomes = await asyncio.gather(
            resolver.delete(ScopeRequest("single")),
            resolver.delete(ScopeRequest("single")),
        )

        self.assertEqual(sum(not outcome.already_satisfied for outcome in outcomes), 1)
        self.assertNotIn("single", store.events)

    async def test_cancelled_single_event_counts_as_deleted(self) -> None:
        store = FakeSeriesStore([single_event().with_updates(status=STATUS_CANCELLED)])
        outcome = await make_resolver(store).delete(ScopeRequest("single"))
        self.assertTrue(outcome.already_satisfied)
        self.assertEqual(store.calls_to("delete_event"), [])

    async def test_this_event_cancels_the_instance(self) -> None:
        store = FakeSeriesStore(weekly_series())
        resolver = make_resolver(store)

        first = await resolver.delete(ScopeRequest(MARCH_10, SCOPE_THIS_EVENT))
        second = await resolver.delete(ScopeRequest(MARCH_10, SCOPE_THIS_EVENT))

        self.assertEqual(first.label, "cancelled (this_event)")
        self.assertTrue(second.already_satisfied)
        self.assertEqual(store.events[MARCH_10].status, STATUS_CANCELLED)
        self.assertEqual(len(store.calls_to("update_event")), 1)
        self.assertEqual(store.calls_to("delete_event"), [])

    async def test_all_events_on_instance_deletes_the_series_once(self) -> None:
        store = FakeSeriesStore(weekly_series())
        outcome = await make_resolver(store).delete(ScopeRequest(MARCH_10, SCOPE_ALL_EVENTS))

        self.assertEqual(outcome.label, "deleted (all_events)")
        self.assertEqual(store.calls_to("delete_event"), [("delete_event", "series-1")])
        self.assertEqual(store.events, {})

    async def test_invalid_delete_scopes(self) -> None:
        store = FakeSeriesStore(weekly_series())
        resolver = make_resolver(store)
        for request in (
            ScopeRequest(MARCH_10),
            ScopeRequest(MARCH_10, SCOPE_THIS_AND_FOLLOWING),
            ScopeRequest("series-1", SCOPE_THIS_EVENT),
        ):
            with self.subTest(request=request):
                with self.assertRaises(InputError):
                    await resolver.delete(request)
        self.assertEqual(store.calls_to("delete_event"), [])


class CancelOccurrenceTests(unittest.IsolatedAsyncioTestCase):
    async def test_cancels_matching_occurrence_once(self) -> None:
        store = FakeSeriesStore(weekly_series())
        resolver = make_resolver(store)

        first = await resolver.cancel_occurrence("series-1", utc(2025, 3, 10, 9) + timedelta(seconds=20))
        second = await resolver.cancel_occurrence("series-1", utc(2025, 3, 10, 9))

        self.assertFalse(first.already_satisfied)
        self.assertTrue(second.already_satisfied)
        self.assertEqual(store.events[MARCH_10].status, STATUS_CANCELLED)

    async def test_missing_occurrence_or_series_is_already_satisfied(self) -> None:
        store = FakeSeriesStore(weekly_series())
        resolver = make_resolver(store)

        self.assertTrue((await resolver.cancel_occurrence("series-1", utc(2025, 3, 11, 9))).already_satisfied)
        self.assertTrue((await resolver.cancel_occurrence("gone", utc(2025, 3, 10, 9))).already_satisfied)
        self.assertEqual(store.calls_to("update_event"), [])


if __name__ == "__main__":
    unittest.main()
