import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

import requests

from calendar_hub.errors import ConfigurationError, IngestionError, ProtocolError
from calendar_hub.ingestion import EnhancedIcsAdapter, FetchResult
from calendar_hub.models import (
    AppConfig,
    AttemptStatus,
    CalendarSource,
    EventMapping,
    EventStatus,
    FetchedEvent,
    FilterRule,
    SyncAction,
)
from calendar_hub.state_store import StateStore
from calendar_hub.sync_engine import FilterSyncService, SyncEngine, generate_sync_token


def _fetched(uid: str, summary: str = "", day: int = 15, hour: int = 10, **overrides) -> FetchedEvent:
    values = {
        "uid": uid,
        "summary": summary or f"Event {uid}",
        "starts_at": datetime(2024, 1, day, hour, tzinfo=timezone.utc),
        "ends_at": datetime(2024, 1, day, hour + 1, tzinfo=timezone.utc),
        "time_zone": "UTC",
    }
    values.update(overrides)
    return FetchedEvent(**values)


def _adapter(*results: FetchResult) -> mock.Mock:
    adapter = mock.Mock()
    adapter.fetch.side_effect = list(results)
    return adapter


class SyncEngineTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = StateStore(os.path.join(self._tmp.name, "state.db"))
        self.config_manager = mock.Mock()
        self.config_manager.load.return_value = AppConfig.from_dict(
            {
                "caldav": {"username": "u@example.com", "app_specific_password": "pw"},
                "sync": {"batch_pause_seconds": 0},
                "app": {"base_url": "https://hub.example.com"},
            }
        )
        self.client = mock.Mock()
        self.client.upsert.side_effect = lambda identifier, payload: payload.uid
        self.client.delete.side_effect = lambda identifier, uid: uid
        self.engine = SyncEngine(self.config_manager, self.store, caldav_client=self.client)
        self.source = self.store.create_source(
            CalendarSource(
                name="Team",
                calendar_identifier="Work",
                ingestion_url="https://feeds.example.com/team.ics",
            )
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _uploaded_uids(self) -> list[str]:
        return [c.args[1].uid for c in self.client.upsert.call_args_list]


class SyncTests(SyncEngineTestCase):
    def test_missing_events_are_cancelled_and_deleted(self) -> None:
        adapter = _adapter(
            FetchResult(changed=True, events=[_fetched("a"), _fetched("b", day=16)]),
            FetchResult(changed=True, events=[_fetched("b", "Renamed", day=16)]),
        )

        first = self.engine.sync(self.source, adapter=adapter)
        self.assertEqual((first.fetched, first.upserts, first.deletes), (2, 2, 0))
        sid = self.source.id
        self.assertEqual(self._uploaded_uids(), [f"ch-{sid}-a", f"ch-{sid}-b"])

        self.client.reset_mock()
        second = self.engine.sync(self.source, adapter=adapter)

        self.assertEqual((second.upserts, second.deletes, second.canceled), (1, 1, 1))
        self.assertEqual(self.client.upsert.call_args.args[1].summary, "Renamed")
        self.client.delete.assert_called_once_with("Work", f"ch-{sid}-a")
        self.assertEqual(self.store.find_event(sid, "a").status, EventStatus.CANCELLED)
        self.assertEqual(self.store.find_event(sid, "b").title, "Renamed")

    def test_not_modified_feed_cancels_nothing(self) -> None:
        adapter = _adapter(FetchResult(changed=True, events=[_fetched("a")]), FetchResult(changed=False))
        self.engine.sync(self.source, adapter=adapter)
        self.client.reset_mock()

        summary = self.engine.sync(self.source, adapter=adapter)

        self.assertFalse(summary.changed)
        self.client.delete.assert_not_called()
        self.assertEqual(self.store.find_event(self.source.id, "a").status, EventStatus.CONFIRMED)

    def test_mark_synced_updates_token_and_hash(self) -> None:
        self.engine.sync(self.source, adapter=_adapter(FetchResult(changed=True, events=[])))

        stored = self.store.get_source(self.source.id)
        self.assertEqual(len(stored.sync_token), 32)
        self.assertIsNotNone(stored.last_synced_at)
        self.assertIsNotNone(stored.last_change_hash)
        self.assertEqual(stored.sync_token, self.source.sync_token)
        self.assertNotEqual(generate_sync_token(), generate_sync_token())

    def test_filtered_and_cancelled_events_are_deleted_remotely(self) -> None:
        self.store.create_filter_rule(FilterRule(pattern="private"))
        adapter = _adapter(
            FetchResult(
                changed=True,
                events=[
                    _fetched("a", "Private: dentist"),
                    _fetched("b", status="cancelled"),
                    _fetched("c", "Planning"),
                ],
            )
        )

        summary = self.engine.sync(self.source, adapter=adapter)

        sid = self.source.id
        self.assertEqual((summary.upserts, summary.deletes), (1, 2))
        self.assertEqual(self._uploaded_uids(), [f"ch-{sid}-c"])
        deleted = sorted(c.args[1] for c in self.client.delete.call_args_list)
        self.assertEqual(deleted, [f"ch-{sid}-a", f"ch-{sid}-b"])
        self.assertTrue(self.store.find_event(sid, "a").sync_exempt)

    def test_event_mappings_rename_pushed_titles(self) -> None:
        self.store.create_event_mapping(EventMapping(pattern="standup", replacement="Daily"))
        self.engine.sync(self.source, adapter=_adapter(FetchResult(changed=True, events=[_fetched("a", "Team Standup")])))

        payload = self.client.upsert.call_args.args[1]
        self.assertEqual(payload.summary, "Daily")
        self.assertEqual(payload.url, f"https://hub.example.com/calendar_events/{self.store.find_event(self.source.id, 'a').id}")
        # the stored title keeps the feed's value
        self.assertEqual(self.store.find_event(self.source.id, "a").title, "Team Standup")

    def test_pushes_are_throttled_per_day(self) -> None:
        throttle = mock.Mock()
        engine = SyncEngine(self.config_manager, self.store, caldav_client=self.client, throttle_factory=lambda _: throttle)
        events = [_fetched("a", day=15), _fetched("b", day=15, hour=14), _fetched("c", day=17)]

        engine.sync(self.source, adapter=_adapter(FetchResult(changed=True, events=events)))

        self.assertEqual(throttle.wait.call_count, 2)
        self.assertEqual(self.client.upsert.call_count, 3)

    def test_configuration_errors(self) -> None:
        with self.assertRaisesRegex(ConfigurationError, "No ingestion adapter configured"):
            self.engine.sync(CalendarSource(id=99, name="x", calendar_identifier="Work"))
        self.source.calendar_identifier = " "
        with self.assertRaisesRegex(ConfigurationError, "Calendar identifier is required"):
            self.engine.sync(self.source, adapter=_adapter())


class EnhancedSyncTests(SyncEngineTestCase):
    def test_unchanged_source_only_moves_last_synced_at(self) -> None:
        self.store.mark_synced(self.source.id, token="tok", timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc), change_hash="h")
        source = self.store.get_source(self.source.id)
        adapter = mock.Mock(spec=EnhancedIcsAdapter)
        adapter.has_changes.return_value = False

        summary = self.engine.sync(source, adapter=adapter, enhanced=True)

        self.assertFalse(summary.changed)
        adapter.fetch_with_change_detection.assert_not_called()
        self.client.upsert.assert_not_called()
        stored = self.store.get_source(self.source.id)
        self.assertEqual((stored.sync_token, stored.last_change_hash), ("tok", "h"))
        self.assertGreater(stored.last_synced_at, datetime(2024, 1, 1, tzinfo=timezone.utc))

    def test_changed_source_runs_full_sync(self) -> None:
        adapter = mock.Mock(spec=EnhancedIcsAdapter)
        adapter.has_changes.return_value = True
        adapter.fetch_with_change_detection.return_value = (True, [_fetched("a")])

        summary = self.engine.sync(self.source, adapter=adapter, enhanced=True)

        self.assertEqual(summary.upserts, 1)
        adapter.fetch.assert_not_called()


class RunSyncTests(SyncEngineTestCase):
    def _run(self, adapter: mock.Mock, attempt_id: int | None = None):
        with mock.patch.object(self.engine, "build_adapter", return_value=adapter):
            return self.engine.run_sync(self.source.id, attempt_id)

    def test_partial_failure_still_succeeds(self) -> None:
        self.client.upsert.side_effect = [ProtocolError("CalDAV PUT failed: 500", status_code=500), "ok"]
        attempt = self.store.create_attempt(self.source.id)
        adapter = _adapter(FetchResult(changed=True, events=[_fetched("a"), _fetched("b", day=16)]))

        summary = self._run(adapter, attempt.id)

        self.assertEqual(summary.upserts, 1)
        stored = self.store.get_attempt(attempt.id)
        self.assertEqual(stored.status, AttemptStatus.SUCCESS)
        self.assertEqual((stored.total_events, stored.upserts, stored.errors_count), (2, 1, 1))
        failures = [r for r in self.store.list_event_results(attempt.id) if not r.success]
        self.assertEqual([(r.external_id, r.action) for r in failures], [("a", SyncAction.UPSERT)])
        self.assertIn("500", failures[0].error_message)

    def test_invalid_event_is_skipped_not_fatal(self) -> None:
        broken = _fetched("bad", ends_at=datetime(2024, 1, 15, 9, tzinfo=timezone.utc))
        attempt = self.store.create_attempt(self.source.id)

        summary = self._run(_adapter(FetchResult(changed=True, events=[broken, _fetched("good")])), attempt.id)

        self.assertEqual(summary.upserts, 1)
        self.assertIsNone(self.store.find_event(self.source.id, "bad"))
        stored = self.store.get_attempt(attempt.id)
        self.assertEqual((stored.status, stored.errors_count), (AttemptStatus.SUCCESS, 1))

    def test_fetch_failure_marks_attempt_failed(self) -> None:
        adapter = mock.Mock()
        adapter.fetch.side_effect = IngestionError("HTTP 500: Internal Server Error")
        attempt = self.store.create_attempt(self.source.id)

        with self.assertRaises(IngestionError):
            self._run(adapter, attempt.id)

        stored = self.store.get_attempt(attempt.id)
        self.assertEqual(stored.status, AttemptStatus.FAILED)
        self.assertEqual(stored.message, "HTTP 500: Internal Server Error")
        self.assertIsNotNone(stored.finished_at)
        self.assertFalse(self.store.has_pending_attempt(self.source.id))

    def test_missing_source_fails_the_attempt(self) -> None:
        attempt = self.store.create_attempt(self.source.id)
        self.store.soft_delete_source(self.source.id)

        with self.assertRaises(ConfigurationError):
            self.engine.run_sync(self.source.id, attempt.id)

        self.assertEqual(self.store.get_attempt(attempt.id).status, AttemptStatus.FAILED)

    def test_creates_attempt_when_none_given(self) -> None:
        self._run(_adapter(FetchResult(changed=True, events=[])))
        attempts = self.store.list_attempts(self.source.id)
        self.assertEqual([a.status for a in attempts], [AttemptStatus.SUCCESS])


class FilterSyncServiceTests(SyncEngineTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.schedule_sync = mock.Mock()
        self.service = FilterSyncService(self.engine, schedule_sync=self.schedule_sync)
        self.engine.sync(
            self.source,
            adapter=_adapter(FetchResult(changed=True, events=[_fetched("a", "Private"), _fetched("b", "Public")])),
        )
        self.client.reset_mock()

    def test_new_rule_filters_existing_events_and_schedules_resync(self) -> None:
        self.store.create_filter_rule(FilterRule(pattern="private", calendar_source_id=self.source.id))

        result = self.service.sync_rule_scope(self.source.id)

        self.assertEqual(result, {self.source.id: {"filtered": 1, "re_included": 0}})
        self.schedule_sync.assert_called_once_with(self.source.id, force=True)

    def test_global_rule_covers_every_active_source(self) -> None:
        other = self.store.create_source(CalendarSource(name="Other", calendar_identifier="Work"))
        self.store.create_filter_rule(FilterRule(pattern="nothing-matches"))

        result = self.service.sync_rule_scope(None)

        self.assertEqual(set(result), {self.source.id, other.id})
        self.schedule_sync.assert_not_called()

    def test_event_filter_status_uses_legacy_uid(self) -> None:
        event = self.store.find_event(self.source.id, "a")
        event.sync_exempt = True
        self.service.sync_event_filter_status(self.source, event)
        self.client.delete.assert_called_once_with("Work", f"a@{self.source.id}.calendar-hub.local")

        event.sync_exempt = False
        self.service.sync_event_filter_status(self.source, event)
        payload = self.client.upsert.call_args.args[1]
        self.assertEqual(payload.uid, f"a@{self.source.id}.calendar-hub.local")
        self.assertIsNotNone(self.store.find_event(self.source.id, "a").synced_at)

    def test_event_filter_status_errors_propagate(self) -> None:
        self.client.upsert.side_effect = ProtocolError("CalDAV PUT failed: 403", status_code=403)
        with self.assertRaises(ProtocolError):
            self.service.sync_event_filter_status(self.source, self.store.find_event(self.source.id, "b"))

    def test_foreign_event_is_ignored(self) -> None:
        event = self.store.find_event(self.source.id, "a")
        event.calendar_source_id = self.source.id + 1
        self.service.sync_event_filter_status(self.source, event)
        self.service.sync_event_filter_status(self.source, None)
        self.client.delete.assert_not_called()
        self.client.upsert.assert_not_called()

class FilterRuleResyncTests(SyncEngineTestCase):
    FEED = "\r\n".join(
        [
            "BEGIN:VCALENDAR",
            "BEGIN:VEVENT",
            "UID:a",
            "SUMMARY:Private dentist",
            "DTSTART:20990115T100000Z",
            "DTEND:20990115T110000Z",
            "END:VEVENT",
            "BEGIN:VEVENT",
            "UID:b",
            "SUMMARY:Public standup",
            "DTSTART:20990116T100000Z",
            "DTEND:20990116T103000Z",
            "END:VEVENT",
            "END:VCALENDAR",
        ]
    )

    def _feed_response(self, url, headers=None, **kwargs) -> requests.Response:
        response = requests.Response()
        response.encoding = "utf-8"
        if "If-None-Match" in (headers or {}):
            response.status_code = 304
            response._content = b""
        else:
            response.status_code = 200
            response._content = self.FEED.encode("utf-8")
            response.headers["ETag"] = '"v1"'
        return response

    def test_new_rule_removes_event_even_when_feed_is_not_modified(self) -> None:
        session = mock.Mock()
        session.get.side_effect = self._feed_response
        engine = SyncEngine(self.config_manager, self.store, caldav_client=self.client, feed_session=session)
        service = FilterSyncService(engine, schedule_sync=lambda source_id, force: engine.run_sync(source_id))

        engine.run_sync(self.source.id)
        sid = self.source.id
        self.assertEqual(sorted(self._uploaded_uids()), [f"ch-{sid}-a", f"ch-{sid}-b"])
        self.client.reset_mock()

        self.store.create_filter_rule(FilterRule(pattern="private"))
        result = service.sync_rule_scope(sid)

        self.assertEqual(result, {sid: {"filtered": 1, "re_included": 0}})
        self.client.delete.assert_called_once_with("Work", f"ch-{sid}-a")
        self.assertTrue(self.store.find_event(sid, "a").sync_exempt)
        # the rule is now part of the stored hash, so an idle poll stays cheap
        self.client.reset_mock()
        engine.run_sync(sid)
        self.client.delete.assert_not_called()
        self.client.upsert.assert_not_called()



if __name__ == "__main__":
    unittest.main()
