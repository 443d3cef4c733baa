from __future__ import annotations

import asyncio
import json
from pathlib import Path

import httpx
import pytest
import respx

from ical_api.calendar import ics
from ical_api.calendar.ics import (
    CalendarFetchError,
    CalendarParseError,
    fetch_ics_url,
    parse_ics_events,
    validate_ics_url,
)

FIXTURES = Path(__file__).parent / "fixtures"
FEED_URL = "https://calendar.example.com/feed.ics"


def _fixture(name: str) -> bytes:
    return (FIXTURES / name).read_bytes()


def _fetch(url: str = FEED_URL, **overrides):
    options = {
        "timeout_seconds": 5.0,
        "max_bytes": 1024 * 1024,
        "max_redirects": 3,
        "attempts": 1,
        "retry_wait_seconds": 0.0,
    }
    options.update(overrides)
    return asyncio.run(fetch_ics_url(url, **options))


def test_parse_keeps_only_vevents_and_converts_to_utc_seconds():
    events = parse_ics_events(_fixture("feed_basic.ics"))

    assert [event["summary"] for event in events] == [
        "Algebra Lecture",
        "algebra tutorial",
        "Exam Week",
    ]
    lecture, tutorial, exam = events
    # 10:00 Europe/Paris in January is 09:00Z.
    assert (lecture["start"], lecture["end"]) == (1705309200, 1705316400)
    assert (tutorial["start"], tutorial["end"]) == (1705411800, 1705417200)
    # All-day entries span one day from midnight UTC.
    assert (exam["start"], exam["end"]) == (1705449600, 1705536000)
    assert exam["description"] is None
    assert all(isinstance(event["start"], int) for event in events)


def test_parse_retains_original_entry_as_raw():
    lecture = parse_ics_events(_fixture("feed_basic.ics"))[0]
    raw = lecture["raw"]

    assert raw["type"] == "VEVENT"
    assert raw["uid"] == "basic-a1@example.test"
    assert raw["datetype"] == "date-time"
    assert raw["start"].startswith("2024-01-15T10:00:00")
    assert raw["properties"]["LOCATION"] == "Room 101"
    assert "BEGIN:VEVENT" in raw["ical"]
    json.dumps(raw)


def test_parse_skips_malformed_entry_and_keeps_the_rest():
    events = parse_ics_events(_fixture("feed_malformed_entry.ics"), source="test")

    assert len(events) == 1
    assert events[0]["summary"] == "Chemistry"
    # DTEND falls back to DTSTART + DURATION.
    assert (events[0]["start"], events[0]["end"]) == (1704186000, 1704191400)


def test_parse_event_without_dtstart_stores_null_times():
    payload = "\n".join(
        [
            "BEGIN:VCALENDAR",
            "VERSION:2.0",
            "BEGIN:VEVENT",
            "UID:no-start",
            "SUMMARY:Someday",
            "END:VEVENT",
            "END:VCALENDAR",
        ]
    )
    events = parse_ics_events(payload)
    assert len(events) == 1
    assert events[0]["start"] is None
    assert events[0]["end"] is None


def test_parse_event_without_end_or_duration_ends_at_start():
    payload = "\n".join(
        [
            "BEGIN:VCALENDAR",
            "VERSION:2.0",
            "BEGIN:VEVENT",
            "UID:instant",
            "DTSTART:20240101T090000Z",
            "SUMMARY:Instant",
            "END:VEVENT",
            "END:VCALENDAR",
        ]
    )
    event = parse_ics_events(payload)[0]
    assert event["start"] == event["end"] == 1704099600


def test_parse_skips_entry_with_out_of_range_dates():
    payload = "\n".join(
        [
            "BEGIN:VCALENDAR",
            "VERSION:2.0",
            "BEGIN:VEVENT",
            "UID:fine",
            "DTSTART:20240101T090000Z",
            "DTEND:20240101T100000Z",
            "SUMMARY:Fine",
            "END:VEVENT",
            "BEGIN:VEVENT",
            "UID:end-of-time",
            "DTSTART;VALUE=DATE:99991231",
            "SUMMARY:End of time",
            "END:VEVENT",
            "BEGIN:VEVENT",
            "UID:long-haul",
            "DTSTART:99991231T000000Z",
            "DURATION:P30D",
            "SUMMARY:Long haul",
            "END:VEVENT",
            "END:VCALENDAR",
        ]
    )

    events = parse_ics_events(payload, source="test")

    assert [event["summary"] for event in events] == ["Fine"]
    assert (events[0]["start"], events[0]["end"]) == (1704099600, 1704103200)


@pytest.mark.parametrize("payload", [b"", b"<html>not a calendar</html>", b"hello world"])
def test_parse_rejects_non_calendar_payload(payload: bytes):
    with pytest.raises(CalendarParseError):
        parse_ics_events(payload)


def test_validate_ics_url_rules():
    assert validate_ics_url(" https://calendar.example.com/a.ics ") == "https://calendar.example.com/a.ics"
    with pytest.raises(ValueError, match="http or https"):
        validate_ics_url("ftp://calendar.example.com/a.ics")
    with pytest.raises(ValueError, match="credentials"):
        validate_ics_url("https://user:pw@calendar.example.com/a.ics")
    with pytest.raises(ValueError, match="required"):
        validate_ics_url("   ")


@respx.mock
def test_fetch_returns_body():
    route = respx.get(FEED_URL).mock(return_value=httpx.Response(200, content=_fixture("feed_second.ics")))

    body = _fetch()

    assert route.called
    assert b"Physics Lab" in body


@respx.mock
def test_fetch_non_2xx_is_fetch_error_without_retry():
    route = respx.get(FEED_URL).mock(return_value=httpx.Response(404))

    with pytest.raises(CalendarFetchError, match="HTTP 404"):
        _fetch(attempts=3)
    assert route.call_count == 1


@respx.mock
def test_fetch_retries_transport_errors():
    route = respx.get(FEED_URL).mock(
        side_effect=[
            httpx.ConnectError("connection refused"),
            httpx.Response(200, content=b"BEGIN:VCALENDAR\nEND:VCALENDAR\n"),
        ]
    )

    body = _fetch(attempts=2)

    assert route.call_count == 2
    assert body.startswith(b"BEGIN:VCALENDAR")


@respx.mock
def test_fetch_gives_up_after_attempts():
    route = respx.get(FEED_URL).mock(side_effect=httpx.ConnectError("down"))

    with pytest.raises(CalendarFetchError) as excinfo:
        _fetch(attempts=2)
    assert excinfo.value.retryable is True
    assert route.call_count == 2


@respx.mock
def test_fetch_timeout_is_fetch_error():
    respx.get(FEED_URL).mock(side_effect=httpx.ReadTimeout("slow"))

    with pytest.raises(CalendarFetchError, match="timed out"):
        _fetch()


@respx.mock
def test_fetch_enforces_size_limit():
    respx.get(FEED_URL).mock(return_value=httpx.Response(200, content=b"x" * 2048))

    with pytest.raises(CalendarFetchError, match="maximum allowed size"):
        _fetch(max_bytes=1024)


def test_fetch_rejects_invalid_url_without_network(monkeypatch):
    def _explode(*_args, **_kwargs):
        raise AssertionError("no request expected")

    monkeypatch.setattr(ics, "_fetch_once", _explode)
    with pytest.raises(CalendarFetchError, match="http or https"):
        _fetch("file:///etc/passwd")
