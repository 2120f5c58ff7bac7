import os
import tempfile
import unittest
from datetime import datetime, timezone
from unittest import mock

from calendar_hub.models import AttemptStatus, CalendarEvent, CalendarSource, SyncAction
from calendar_hub.observer import AttemptObserver
from calendar_hub.state_store import StateStore
from calendar_hub.throttle import IntervalThrottle


class AttemptObserverTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = StateStore(os.path.join(self._tmp.name, "state.db"))
        source = self.store.create_source(CalendarSource(name="Team"))
        self.attempt = self.store.create_attempt(source.id)
        self.observer = AttemptObserver(self.store, self.attempt)
        self.event = CalendarEvent(
            calendar_source_id=source.id,
            external_id="a",
            starts_at=datetime(2024, 1, 15, 10, tzinfo=timezone.utc),
            ends_at=datetime(2024, 1, 15, 11, tzinfo=timezone.utc),
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_progress_and_results_are_persisted(self) -> None:
        self.observer.start(3)
        self.observer.upsert_success(self.event)
        self.observer.delete_success(self.event)
        self.observer.upsert_error(self.event, RuntimeError("HTTP 500"))
        self.observer.finish(AttemptStatus.SUCCESS)

        stored = self.store.get_attempt(self.attempt.id)
        self.assertEqual(stored.status, AttemptStatus.SUCCESS)
        self.assertEqual((stored.total_events, stored.upserts, stored.deletes, stored.errors_count), (3, 1, 1, 1))
        self.assertIsNotNone(stored.started_at)
        self.assertIsNotNone(stored.finished_at)

        results = self.store.list_event_results(self.attempt.id)
        self.assertEqual([(r.action, r.success) for r in results], [
            (SyncAction.UPSERT, True),
            (SyncAction.DELETE, True),
            (SyncAction.UPSERT, False),
        ])
        self.assertEqual(results[2].error_message, "HTTP 500")

    def test_finish_is_idempotent(self) -> None:
        self.observer.finish(AttemptStatus.FAILED, "boom")
        self.observer.finish(AttemptStatus.SUCCESS)

        stored = self.store.get_attempt(self.attempt.id)
        self.assertEqual(stored.status, AttemptStatus.FAILED)
        self.assertEqual(stored.message, "boom")
        self.assertTrue(self.observer.finished)

    def test_start_does_not_reopen_swept_attempt(self) -> None:
        self.observer.finish(AttemptStatus.FAILED, "stale")
        self.observer.start(3)
        self.observer.finish(AttemptStatus.SUCCESS)

        stored = self.store.get_attempt(self.attempt.id)
        self.assertEqual(stored.status, AttemptStatus.FAILED)
        self.assertEqual(stored.message, "stale")
        self.assertEqual(stored.total_events, 0)


class IntervalThrottleTests(unittest.TestCase):
    def test_wait_spaces_calls(self) -> None:
        now = [100.0]
        sleep = mock.Mock(side_effect=lambda seconds: now.__setitem__(0, now[0] + seconds))
        throttle = IntervalThrottle(0.5, clock=lambda: now[0], sleep=sleep)

        self.assertEqual(throttle.wait(), 0.0)
        now[0] += 0.2
        self.assertAlmostEqual(throttle.wait(), 0.3)
        now[0] += 1.0
        self.assertEqual(throttle.wait(), 0.0)
        sleep.assert_called_once()

        throttle.reset()
        self.assertEqual(throttle.wait(), 0.0)

    def test_zero_interval_never_sleeps(self) -> None:
        sleep = mock.Mock()
        throttle = IntervalThrottle(0, clock=lambda: 1.0, sleep=sleep)
        for _ in range(3):
            throttle.wait()
        sleep.assert_not_called()


if __name__ == "__main__":
    unittest.main()
