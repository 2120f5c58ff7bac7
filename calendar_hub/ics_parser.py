"""Permissive ICS (RFC 5545) reader that turns VEVENT blocks into ``FeedEvent`` records.

Line unfolding and content-line splitting come from ``icalendar.parser``; this
module only decides what the properties mean. Real-world feeds are messy, so
nothing in here raises on bad input: malformed date-times fall back to a
lenient parse in the default zone, events without a UID or DTSTART are
dropped, and an unreadable body yields an empty list.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone, tzinfo
from typing import Any, Iterable

from dateutil import parser as date_parser
from icalendar.parser import Contentline, Contentlines
from icalendar.prop import vText

from calendar_hub.models import DEFAULT_TIME_ZONE, EventStatus, FeedEvent, resolve_zone, zone_or_utc


logger = logging.getLogger(__name__)

RECOGNIZED_KEYS = {"UID", "SUMMARY", "DESCRIPTION", "LOCATION", "STATUS", "DTSTART", "DTEND"}


def unfold_lines(ics_content: str) -> list[Contentline]:
    return [line for line in Contentlines.from_ical(ics_content) if line]


def _param_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ",".join(str(item) for item in value)
    return str(value)


def parse_line(line: str) -> tuple[str, dict[str, str], str]:
    """Split one unfolded content line into (NAME, {PARAM: value}, decoded value)."""
    name, params, value = Contentline(line).parts()
    decoded = {str(key).upper(): _param_value(param) for key, param in params.items()}
    return str(name).upper(), decoded, str(vText.from_ical(value))


def _is_date_only(value: str, params: dict[str, str]) -> bool:
    return params.get("VALUE", "").upper() == "DATE" or (len(value) == 8 and value.isdigit())


def parse_datetime(value: str, params: dict[str, str], default_zone: tzinfo) -> datetime | None:
    text = value.strip()
    if not text:
        return None
    zone = resolve_zone(params.get("TZID")) or default_zone
    try:
        if _is_date_only(text, params):
            return datetime.strptime(text[:8], "%Y%m%d").replace(tzinfo=zone)
        if text.endswith("Z"):
            return datetime.strptime(text, "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)
        return datetime.strptime(text, "%Y%m%dT%H%M%S").replace(tzinfo=zone)
    except ValueError:
        return _lenient_datetime(text, default_zone)


def _lenient_datetime(text: str, default_zone: tzinfo) -> datetime | None:
    try:
        parsed = date_parser.parse(text)
    except (ValueError, OverflowError):
        logger.debug("Unparseable ICS date-time %r", text)
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=default_zone)
    return parsed


def _build_event(attributes: dict[str, Any], default_time_zone: str, default_zone: tzinfo) -> FeedEvent | None:
    uid = str(attributes.get("uid") or "").strip()
    dtstart_raw = attributes.get("dtstart_raw")
    if not uid or not dtstart_raw:
        return None

    start_params: dict[str, str] = attributes.get("dtstart_params", {})
    starts_at = parse_datetime(dtstart_raw, start_params, default_zone)
    if starts_at is None:
        return None

    start_tzid = start_params.get("TZID")
    dtend_raw = attributes.get("dtend_raw")
    ends_at = None
    if dtend_raw:
        end_params = dict(attributes.get("dtend_params", {}))
        if start_tzid and "TZID" not in end_params:
            end_params["TZID"] = start_tzid
        ends_at = parse_datetime(dtend_raw, end_params, default_zone)
    if ends_at is None:
        ends_at = starts_at

    tzid = start_tzid or attributes.get("dtend_params", {}).get("TZID")
    return FeedEvent(
        uid=uid,
        summary=attributes.get("summary"),
        description=attributes.get("description"),
        location=attributes.get("location"),
        starts_at=starts_at,
        ends_at=ends_at,
        status=attributes.get("status") or EventStatus.CONFIRMED.value,
        time_zone=tzid or default_time_zone,
        all_day=_is_date_only(dtstart_raw.strip(), start_params),
        raw_properties=dict(attributes.get("raw", {})),
    )


def _iter_event_blocks(lines: Iterable[str]) -> Iterable[list[str]]:
    current: list[str] | None = None
    nested_depth = 0
    for line in lines:
        marker = line.strip().upper()
        if marker == "BEGIN:VEVENT":
            current = []
            nested_depth = 0
        elif marker == "END:VEVENT":
            if current is not None:
                yield current
            current = None
        elif current is not None:
            # VALARM and friends nest inside VEVENT; their properties are not the event's.
            if marker.startswith("BEGIN:"):
                nested_depth += 1
            elif marker.startswith("END:"):
                nested_depth = max(0, nested_depth - 1)
            elif nested_depth == 0:
                current.append(line)


def _collect_attributes(block: list[str]) -> dict[str, Any]:
    attributes: dict[str, Any] = {"raw": {}}
    for line in block:
        try:
            key, params, value = parse_line(line)
        except ValueError as exc:
            logger.debug("Skipping malformed ICS line %r: %s", line, exc)
            continue
        if not key:
            continue
        if key == "STATUS":
            attributes["status"] = value.strip().lower()
        elif key in ("DTSTART", "DTEND"):
            attributes[f"{key.lower()}_raw"] = value
            attributes[f"{key.lower()}_params"] = params
        elif key in RECOGNIZED_KEYS:
            attributes[key.lower()] = value
        else:
            attributes["raw"][key.lower()] = value
    return attributes


def parse_ics(ics_content: str | bytes | None, default_time_zone: str = DEFAULT_TIME_ZONE) -> list[FeedEvent]:
    if isinstance(ics_content, bytes):
        ics_content = ics_content.decode("utf-8", errors="replace")
    text = str(ics_content or "")
    default_zone = zone_or_utc(default_time_zone)

    try:
        lines = unfold_lines(text)
    except ValueError as exc:
        logger.warning("Unreadable ICS body: %s", exc)
        return []

    events: list[FeedEvent] = []
    for block in _iter_event_blocks(lines):
        try:
            event = _build_event(_collect_attributes(block), default_time_zone, default_zone)
        except Exception as exc:
            logger.warning("Skipping unreadable VEVENT: %s", exc)
            continue
        if event is not None:
            events.append(event)
    return events
