import unittest
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from calendar_hub.ics_parser import parse_ics, parse_line, unfold_lines


def _calendar(*event_lines: str) -> str:
    return "\r\n".join(["BEGIN:VCALENDAR", "VERSION:2.0", *event_lines, "END:VCALENDAR", ""])


class UnfoldAndLineTests(unittest.TestCase):
    def test_unfold_joins_space_and_tab_continuations(self) -> None:
        lines = unfold_lines("SUMMARY:Team\r\n  standup\r\n\twith notes\r\nUID:1")
        self.assertEqual(lines, ["SUMMARY:Team standupwith notes", "UID:1"])

    def test_parse_line_splits_on_first_colon_outside_quotes(self) -> None:
        key, params, value = parse_line('DTSTART;TZID="Europe/Berlin":20240115T100000')
        self.assertEqual(key, "DTSTART")
        self.assertEqual(params, {"TZID": "Europe/Berlin"})
        self.assertEqual(value, "20240115T100000")

        key, _, value = parse_line("URL:https://example.com/a:b")
        self.assertEqual(key, "URL")
        self.assertEqual(value, "https://example.com/a:b")

    def test_parse_line_decodes_text_escapes(self) -> None:
        _, _, value = parse_line(r"DESCRIPTION:a\, b\; c\nd")
        self.assertEqual(value, "a, b; c\nd")

    def test_parse_line_rejects_lines_without_value(self) -> None:
        with self.assertRaises(ValueError):
            parse_line("NOT A PROPERTY")


class ParseIcsTests(unittest.TestCase):
    def test_folded_lines_parse_like_unfolded(self) -> None:
        unfolded = _calendar(
            "BEGIN:VEVENT",
            "UID:evt-1",
            "SUMMARY:Quarterly planning session with the whole team",
            "DTSTART:20240115T100000Z",
            "END:VEVENT",
        )
        folded = _calendar(
            "BEGIN:VEVENT",
            "UID:evt-1",
            "SUMMARY:Quarterly planning sess",
            " ion with the whole team",
            "DTSTART:20240115T1",
            " 00000Z",
            "END:VEVENT",
        )
        self.assertEqual(parse_ics(folded), parse_ics(unfolded))

    def test_z_suffix_is_utc(self) -> None:
        events = parse_ics(_calendar("BEGIN:VEVENT", "UID:a", "DTSTART:20240115T100000Z", "END:VEVENT"))
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].starts_at.utcoffset(), timedelta(0))
        self.assertEqual(events[0].starts_at, datetime(2024, 1, 15, 10, tzinfo=timezone.utc))

    def test_tzid_applies_to_dtend_without_its_own(self) -> None:
        events = parse_ics(
            _calendar(
                "BEGIN:VEVENT",
                "UID:a",
                "DTSTART;TZID=America/New_York:20240115T100000",
                "DTEND:20240115T110000",
                "END:VEVENT",
            ),
            "UTC",
        )
        event = events[0]
        zone = ZoneInfo("America/New_York")
        self.assertEqual(event.starts_at, datetime(2024, 1, 15, 10, tzinfo=zone))
        self.assertEqual(event.ends_at, datetime(2024, 1, 15, 11, tzinfo=zone))
        self.assertEqual(event.time_zone, "America/New_York")
        self.assertFalse(event.all_day)

    def test_unknown_tzid_falls_back_to_default_zone(self) -> None:
        events = parse_ics(
            _calendar("BEGIN:VEVENT", "UID:a", "DTSTART;TZID=Mars/Olympus:20240115T100000", "END:VEVENT"),
            "Europe/Berlin",
        )
        self.assertEqual(events[0].starts_at, datetime(2024, 1, 15, 10, tzinfo=ZoneInfo("Europe/Berlin")))

    def test_bare_date_is_all_day_midnight_in_default_zone(self) -> None:
        events = parse_ics(
            _calendar("BEGIN:VEVENT", "UID:a", "DTSTART;VALUE=DATE:20240115", "END:VEVENT"),
            "Europe/Berlin",
        )
        event = events[0]
        self.assertTrue(event.all_day)
        self.assertEqual(event.starts_at, datetime(2024, 1, 15, tzinfo=ZoneInfo("Europe/Berlin")))
        # no DTEND -> zero-duration event
        self.assertEqual(event.ends_at, event.starts_at)

    def test_events_without_uid_or_dtstart_are_dropped(self) -> None:
        events = parse_ics(
            _calendar(
                "BEGIN:VEVENT",
                "SUMMARY:no uid",
                "DTSTART:20240115T100000Z",
                "END:VEVENT",
                "BEGIN:VEVENT",
                "UID:no-start",
                "END:VEVENT",
                "BEGIN:VEVENT",
                "UID:kept",
                "DTSTART:20240115T100000Z",
                "END:VEVENT",
            )
        )
        self.assertEqual([event.uid for event in events], ["kept"])

    def test_malformed_datetime_falls_back_to_default_zone(self) -> None:
        events = parse_ics(
            _calendar("BEGIN:VEVENT", "UID:a", "DTSTART:2024-01-15 10:30", "END:VEVENT"),
            "Europe/Berlin",
        )
        self.assertEqual(events[0].starts_at, datetime(2024, 1, 15, 10, 30, tzinfo=ZoneInfo("Europe/Berlin")))

    def test_garbage_yields_empty_list(self) -> None:
        self.assertEqual(parse_ics("this is not a calendar"), [])
        self.assertEqual(parse_ics(b"\x00\xff\xfe"), [])
        self.assertEqual(parse_ics(None), [])

    def test_fields_status_and_raw_properties(self) -> None:
        events = parse_ics(
            _calendar(
                "BEGIN:VEVENT",
                "UID:a",
                r"SUMMARY:Lunch\, with Bob",
                r"DESCRIPTION:Line one\nLine two",
                "LOCATION:Cafe",
                "STATUS:CANCELLED",
                "DTSTART:20240115T120000Z",
                "DTEND:20240115T130000Z",
                "X-CUSTOM-FLAG:yes",
                "NOT A PROPERTY",
                "BEGIN:VALARM",
                "ACTION:DISPLAY",
                "DESCRIPTION:Reminder",
                "END:VALARM",
                "END:VEVENT",
            )
        )
        event = events[0]
        self.assertEqual(event.summary, "Lunch, with Bob")
        self.assertEqual(event.description, "Line one\nLine two")
        self.assertEqual(event.location, "Cafe")
        self.assertEqual(event.status, "cancelled")
        self.assertEqual(event.raw_properties.get("x-custom-flag"), "yes")
        self.assertNotIn("action", event.raw_properties)


if __name__ == "__main__":
    unittest.main()
