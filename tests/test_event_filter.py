import os
import tempfile
import unittest
from datetime import datetime, timezone

from calendar_hub.event_filter import EventFilter, rule_matches, text_matches
from calendar_hub.models import CalendarEvent, CalendarSource, FieldName, FilterRule, MatchType
from calendar_hub.state_store import StateStore


def _event(external_id: str, title: str, source_id: int = 1, **overrides) -> CalendarEvent:
    values = {
        "calendar_source_id": source_id,
        "external_id": external_id,
        "title": title,
        "starts_at": datetime(2024, 1, 15, 10, tzinfo=timezone.utc),
        "ends_at": datetime(2024, 1, 15, 11, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return CalendarEvent(**values)


class MatchingTests(unittest.TestCase):
    def test_match_types(self) -> None:
        self.assertTrue(text_matches("Team Standup", "standup", MatchType.CONTAINS, False))
        self.assertFalse(text_matches("Team Standup", "standup", MatchType.CONTAINS, True))
        self.assertTrue(text_matches("Lunch", "LUNCH", MatchType.EQUALS, False))
        self.assertFalse(text_matches("Lunch break", "lunch", MatchType.EQUALS, False))
        self.assertTrue(text_matches("Sprint 42 review", r"sprint \d+", MatchType.REGEX, False))
        self.assertFalse(text_matches("anything", "x", None, False))

    def test_invalid_regex_never_matches(self) -> None:
        self.assertFalse(text_matches("a(b", "a(b", MatchType.REGEX, False))

    def test_rule_on_empty_field_never_matches(self) -> None:
        rule = FilterRule(pattern=".*", match_type=MatchType.REGEX, field_name=FieldName.LOCATION)
        self.assertFalse(rule_matches(rule, _event("a", "Title", location=None)))
        self.assertFalse(rule_matches(rule, _event("a", "Title", location="   ")))
        self.assertTrue(rule_matches(rule, _event("a", "Title", location="Room 1")))

    def test_rule_with_unknown_field_never_matches(self) -> None:
        rule = FilterRule(pattern="Title", field_name=None)
        self.assertFalse(rule_matches(rule, _event("a", "Title")))


class EventFilterTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = StateStore(os.path.join(self._tmp.name, "state.db"))
        self.source = self.store.create_source(CalendarSource(name="Team"))
        self.other = self.store.create_source(CalendarSource(name="Other"))
        self.event_filter = EventFilter(self.store)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_any_matching_rule_filters(self) -> None:
        # One rule matches, the other does not: the event is still filtered.
        self.store.create_filter_rule(FilterRule(pattern="Private", match_type=MatchType.EQUALS))
        self.store.create_filter_rule(
            FilterRule(pattern="lunch", calendar_source_id=self.source.id, field_name=FieldName.DESCRIPTION)
        )

        event = _event("a", "Standup", self.source.id, description="Team lunch after")

        self.assertTrue(self.event_filter.should_filter(event))
        self.assertFalse(self.event_filter.should_filter(_event("b", "Standup", self.source.id)))

    def test_scoped_rules_do_not_leak_to_other_sources(self) -> None:
        self.store.create_filter_rule(FilterRule(pattern="Standup", calendar_source_id=self.source.id))

        kept = self.event_filter.apply_filters(
            [_event("a", "Standup", self.source.id), _event("b", "Standup", self.other.id)]
        )

        self.assertEqual([(e.calendar_source_id, e.external_id) for e in kept], [(self.other.id, "b")])

    def test_backward_then_reverse_filtering(self) -> None:
        self.store.save_event(_event("a", "Private: dentist", self.source.id))
        self.store.save_event(_event("b", "Planning", self.source.id))
        rule = self.store.create_filter_rule(FilterRule(pattern="private"))

        self.assertEqual(self.event_filter.apply_backward_filtering(self.source), 1)
        self.assertTrue(self.store.find_event(self.source.id, "a").sync_exempt)
        self.assertFalse(self.store.find_event(self.source.id, "b").sync_exempt)
        self.assertEqual(self.event_filter.apply_backward_filtering(self.source), 0)

        self.store.delete_filter_rule(rule.id)
        self.assertEqual(
            [e.external_id for e in self.event_filter.find_re_includable_events(self.source)],
            ["a"],
        )
        self.assertEqual(self.event_filter.apply_reverse_filtering(self.source), 1)
        self.assertFalse(self.store.find_event(self.source.id, "a").sync_exempt)

    def test_backward_filtering_without_rules_is_noop(self) -> None:
        self.store.save_event(_event("a", "Anything", self.source.id))
        self.assertEqual(self.event_filter.apply_backward_filtering(self.source), 0)
        self.assertEqual(self.event_filter.apply_reverse_filtering(self.source), 0)


if __name__ == "__main__":
    unittest.main()
