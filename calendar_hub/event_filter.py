from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Iterable

from calendar_hub.models import CalendarEvent, CalendarSource, FieldName, FilterRule, MatchType

if TYPE_CHECKING:
    from calendar_hub.state_store import StateStore


logger = logging.getLogger(__name__)


def compile_pattern(pattern: str, case_sensitive: bool) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
    except re.error as exc:
        logger.debug("Ignoring invalid regex %r: %s", pattern, exc)
        return None


def text_matches(text: str, pattern: str, match_type: MatchType | None, case_sensitive: bool) -> bool:
    if match_type is None:
        return False
    if match_type is MatchType.REGEX:
        compiled = compile_pattern(pattern, case_sensitive)
        return bool(compiled and compiled.search(text))
    if not case_sensitive:
        text, pattern = text.casefold(), pattern.casefold()
    if match_type is MatchType.EQUALS:
        return text == pattern
    if match_type is MatchType.CONTAINS:
        return pattern in text
    return False


def field_value(event: CalendarEvent, field_name: FieldName | None) -> str:
    if field_name is FieldName.TITLE:
        return event.title or ""
    if field_name is FieldName.DESCRIPTION:
        return event.description or ""
    if field_name is FieldName.LOCATION:
        return event.location or ""
    return ""


def rule_matches(rule: FilterRule, event: CalendarEvent) -> bool:
    value = field_value(event, rule.field_name)
    if not value.strip():
        return False
    return text_matches(value, rule.pattern, rule.match_type, rule.case_sensitive)


class EventFilter:
    """Decides which events are kept off the remote calendar.

    Rules scoped to the event's source and global rules (no source) both apply;
    a single matching rule is enough to exempt the event.
    """

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def rules_for(self, source_id: int | None) -> list[FilterRule]:
        return self.store.active_filter_rules(source_id)

    def should_filter(self, event: CalendarEvent, rules: Iterable[FilterRule] | None = None) -> bool:
        if rules is None:
            rules = self.rules_for(event.calendar_source_id)
        return any(rule_matches(rule, event) for rule in rules)

    def apply_filters(self, events: Iterable[CalendarEvent]) -> list[CalendarEvent]:
        """Return the events that pass every rule."""
        cache: dict[int, list[FilterRule]] = {}
        kept: list[CalendarEvent] = []
        for event in events:
            rules = cache.setdefault(event.calendar_source_id, self.rules_for(event.calendar_source_id))
            if not self.should_filter(event, rules):
                kept.append(event)
        return kept

    def apply_backward_filtering(self, source: CalendarSource) -> int:
        rules = self.rules_for(source.id)
        if not rules:
            return 0
        changed = 0
        for event in self.store.list_events(source.id, sync_exempt=False):
            if self.should_filter(event, rules):
                self.store.set_event_exempt(event.id, True)
                changed += 1
        if changed:
            logger.info("Filtered %s existing events for source=%s", changed, source.id)
        return changed

    def find_re_includable_events(self, source: CalendarSource) -> list[CalendarEvent]:
        rules = self.rules_for(source.id)
        return [
            event
            for event in self.store.list_events(source.id, sync_exempt=True)
            if not self.should_filter(event, rules)
        ]

    def apply_reverse_filtering(self, source: CalendarSource) -> int:
        events = self.find_re_includable_events(source)
        for event in events:
            self.store.set_event_exempt(event.id, False)
        if events:
            logger.info("Re-included %s events for source=%s", len(events), source.id)
        return len(events)
