from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

from icalendar import Calendar, Event

from ical_api.config import AppSettings

ICAL_MEDIA_TYPE = "text/calendar; charset=utf-8"
_TEXT_FIELDS = ("summary", "location", "description")


class CalendarEncodeError(RuntimeError):
    """Raised when a stored record cannot be rendered as a VEVENT."""


def _utc_from_seconds(value: Any) -> datetime:
    # Stored timestamps are whole seconds; never milliseconds.
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _event_component(record: dict[str, Any], *, uid_domain: str, stamp: datetime) -> Event:
    event = Event()
    event.add("uid", f"event-{record['id']}@{uid_domain}")
    event.add("dtstamp", stamp)
    if record.get("start") is not None:
        event.add("dtstart", _utc_from_seconds(record["start"]))
    if record.get("end") is not None:
        event.add("dtend", _utc_from_seconds(record["end"]))
    for field in _TEXT_FIELDS:
        value = record.get(field)
        if value is not None:
            event.add(field, str(value))
    return event


def render_calendar(
    records: Iterable[dict[str, Any]],
    *,
    settings: AppSettings | None = None,
    now: datetime | None = None,
) -> str:
    """Render records into one VCALENDAR document.

    The whole document is built before anything is returned; a record that
    cannot be encoded raises :class:`CalendarEncodeError` instead of yielding
    a truncated calendar. ``raw`` payloads are never encoded.
    """
    cfg = settings or AppSettings()
    stamp = (now or datetime.now(tz=timezone.utc)).astimezone(timezone.utc).replace(microsecond=0)

    calendar = Calendar()
    calendar.add("prodid", cfg.calendar_prod_id)
    calendar.add("version", "2.0")
    calendar.add("calscale", "GREGORIAN")
    calendar.add("method", "REQUEST")
    calendar.add("x-wr-calname", cfg.calendar_name)
    for record in records:
        try:
            component = _event_component(record, uid_domain=cfg.calendar_uid_domain, stamp=stamp)
        except Exception as exc:
            raise CalendarEncodeError(
                f"Unable to encode event id={record.get('id')}: {exc}"
            ) from exc
        calendar.add_component(component)
    try:
        return calendar.to_ical().decode("utf-8")
    except Exception as exc:
        raise CalendarEncodeError(f"Unable to serialise calendar: {exc}") from exc


__all__ = ["CalendarEncodeError", "ICAL_MEDIA_TYPE", "render_calendar"]
