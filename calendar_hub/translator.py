from __future__ import annotations

from calendar_hub.models import (
    UNTITLED_EVENT,
    CalendarEvent,
    CalendarPayload,
    CalendarSource,
    DEFAULT_TIME_ZONE,
    zone_or_utc,
)
from calendar_hub.name_mapper import NameMapper


def composite_uid_for(event: CalendarEvent) -> str:
    return f"ch-{event.calendar_source_id}-{event.external_id}"


def legacy_uid_for(event: CalendarEvent) -> str:
    # Objects pushed by the filter resync path before UIDs were unified still use this form.
    return f"{event.external_id}@{event.calendar_source_id}.calendar-hub.local"


def event_url_for(event: CalendarEvent, base_url: str) -> str | None:
    base = (base_url or "").rstrip("/")
    if not base or event.id is None:
        return None
    return f"{base}/calendar_events/{event.id}"


class EventTranslator:
    """Turns a stored ``CalendarEvent`` into the payload handed to ``CalDAVClient.upsert``."""

    def __init__(
        self,
        source: CalendarSource,
        name_mapper: NameMapper | None = None,
        link_base_url: str = "",
        default_time_zone: str = DEFAULT_TIME_ZONE,
    ) -> None:
        self.source = source
        self.name_mapper = name_mapper
        self.link_base_url = link_base_url
        self.default_time_zone = default_time_zone

    def call(self, event: CalendarEvent, uid: str | None = None) -> CalendarPayload:
        summary = event.title or UNTITLED_EVENT
        if self.name_mapper is not None:
            summary = self.name_mapper.apply(summary, self.source.id)

        starts_at, ends_at = event.starts_at, event.ends_at
        if event.all_day:
            # Stored in UTC; the calendar date belongs to the event's own zone.
            zone = zone_or_utc(event.time_zone or self.source.resolved_time_zone(self.default_time_zone))
            starts_at, ends_at = starts_at.astimezone(zone), ends_at.astimezone(zone)

        return CalendarPayload(
            uid=uid or composite_uid_for(event),
            summary=summary,
            description=event.description or "",
            location=event.location or "",
            starts_at=starts_at,
            ends_at=ends_at,
            status=event.status,
            all_day=event.all_day,
            transparency="opaque",
            url=event_url_for(event, self.link_base_url),
            x_props={
                "X-CH-SOURCE": self.source.name,
                "X-CH-SOURCE-ID": str(self.source.id),
            },
        )
