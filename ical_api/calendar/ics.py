from __future__ import annotations

import asyncio
from datetime import date, datetime, time, timedelta, timezone
import logging
from typing import Any
from urllib.parse import urlsplit

import httpx
from icalendar import Calendar
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ical_api.metrics import feed_failures_total

_logger = logging.getLogger(__name__)
_ACCEPT_HEADERS = {"Accept": "text/calendar,text/plain;q=0.9,*/*;q=0.8"}
_TIME_PROPERTIES = ("DTSTART", "DTEND", "DURATION")


class CalendarFetchError(RuntimeError):
    """Raised when calendar content cannot be fetched from a URL source."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class CalendarParseError(ValueError):
    """Raised when ICS content cannot be parsed into event records."""


def _coerce_utc_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def epoch_seconds(value: date | datetime) -> int:
    return int(_coerce_utc_datetime(value).timestamp())


def validate_ics_url(raw_url: str) -> str:
    url = str(raw_url or "").strip()
    if not url:
        raise ValueError("ICS URL is required")
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in {"http", "https"}:
        raise ValueError("ICS URL must use http or https")
    if parts.username or parts.password:
        raise ValueError("ICS URL must not include credentials")
    if not parts.hostname:
        raise ValueError("ICS URL must include a host")
    return parts.geturl()


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, CalendarFetchError) and exc.retryable


async def _read_body(client: httpx.AsyncClient, url: str, *, max_bytes: int) -> bytes:
    async with client.stream("GET", url, headers=_ACCEPT_HEADERS) as response:
        response.raise_for_status()
        chunks: list[bytes] = []
        total_bytes = 0
        async for chunk in response.aiter_bytes():
            if not chunk:
                continue
            total_bytes += len(chunk)
            if total_bytes > max_bytes:
                raise CalendarFetchError("Calendar feed exceeded maximum allowed size")
            chunks.append(chunk)
        return b"".join(chunks)


async def _fetch_once(
    client: httpx.AsyncClient,
    url: str,
    *,
    timeout_seconds: float,
    max_bytes: int,
) -> bytes:
    try:
        return await asyncio.wait_for(
            _read_body(client, url, max_bytes=max_bytes),
            timeout=timeout_seconds,
        )
    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        raise CalendarFetchError("Calendar fetch timed out", retryable=True) from exc
    except httpx.HTTPStatusError as exc:
        status_code = int(exc.response.status_code)
        raise CalendarFetchError(
            f"Calendar fetch failed with HTTP {status_code}",
            retryable=status_code >= 500,
        ) from exc
    except httpx.TooManyRedirects as exc:
        raise CalendarFetchError("Calendar fetch exceeded redirect limit") from exc
    except httpx.HTTPError as exc:
        raise CalendarFetchError("Calendar fetch failed", retryable=True) from exc


async def fetch_ics_url(
    url: str,
    *,
    timeout_seconds: float,
    max_bytes: int,
    max_redirects: int,
    attempts: int = 1,
    retry_wait_seconds: float = 0.0,
    client: httpx.AsyncClient | None = None,
) -> bytes:
    """Download one feed, retrying timeouts, transport errors and 5xx answers."""
    try:
        current_url = validate_ics_url(url)
    except ValueError as exc:
        raise CalendarFetchError(str(exc)) from exc

    async def _run(active: httpx.AsyncClient) -> bytes:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, int(attempts))),
            wait=wait_exponential(multiplier=retry_wait_seconds, max=max(retry_wait_seconds, 30.0)),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await _fetch_once(
                    active,
                    current_url,
                    timeout_seconds=timeout_seconds,
                    max_bytes=max_bytes,
                )
        raise CalendarFetchError("Calendar fetch failed")  # pragma: no cover

    if client is not None:
        return await _run(client)
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_seconds),
        follow_redirects=True,
        max_redirects=max_redirects,
    ) as own_client:
        return await _run(own_client)


def _property_text(component: Any, key: str) -> str | None:
    value = component.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _ical_text(value: Any) -> Any:
    if isinstance(value, list):
        return [_ical_text(item) for item in value]
    to_ical = getattr(value, "to_ical", None)
    if callable(to_ical):
        encoded = to_ical()
        if isinstance(encoded, bytes):
            return encoded.decode("utf-8", errors="replace")
        return str(encoded)
    return str(value)


def _decoded_time(component: Any, key: str) -> Any:
    try:
        return component.decoded(key)
    except KeyError:
        return None
    except Exception as exc:
        raise CalendarParseError(f"Unable to decode {key}") from exc


def _normalise_event(component: Any) -> dict[str, Any]:
    broken = sorted(
        {
            str(name).upper()
            for name, _message in getattr(component, "errors", None) or []
            if str(name).upper() in _TIME_PROPERTIES
        }
    )
    if broken:
        raise CalendarParseError(f"Unparsable {', '.join(broken)}")

    dtstart_raw = _decoded_time(component, "DTSTART")
    dtend_raw = _decoded_time(component, "DTEND")
    duration_raw = _decoded_time(component, "DURATION")
    for key, value in (("DTSTART", dtstart_raw), ("DTEND", dtend_raw)):
        if value is not None and not isinstance(value, (date, datetime)):
            raise CalendarParseError(f"Unable to decode {key}")
    if duration_raw is not None and not isinstance(duration_raw, timedelta):
        raise CalendarParseError("Unable to decode DURATION")

    all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)
    start: int | None = None
    end: int | None = None
    if dtstart_raw is not None:
        try:
            starts_at = _coerce_utc_datetime(dtstart_raw)
            if dtend_raw is not None:
                ends_at = _coerce_utc_datetime(dtend_raw)
            elif duration_raw is not None:
                ends_at = starts_at + duration_raw
            elif all_day:
                ends_at = starts_at + timedelta(days=1)
            else:
                ends_at = starts_at
            start = int(starts_at.timestamp())
            end = int(ends_at.timestamp())
        except (OverflowError, ValueError) as exc:
            raise CalendarParseError(f"Event times out of range: {exc}") from exc

    summary = _property_text(component, "SUMMARY")
    location = _property_text(component, "LOCATION")
    description = _property_text(component, "DESCRIPTION")
    raw = {
        "type": str(component.name).upper(),
        "uid": _property_text(component, "UID"),
        "start": dtstart_raw.isoformat() if dtstart_raw is not None else None,
        "end": dtend_raw.isoformat() if dtend_raw is not None else None,
        "datetype": "date" if all_day else "date-time",
        "summary": summary,
        "location": location,
        "description": description,
        "properties": {str(name): _ical_text(value) for name, value in component.items()},
        "ical": component.to_ical().decode("utf-8", errors="replace"),
    }
    return {
        "start": start,
        "end": end,
        "summary": summary,
        "location": location,
        "description": description,
        "raw": raw,
    }


def parse_ics_events(payload: str | bytes, *, source: str | None = None) -> list[dict[str, Any]]:
    """Turn one feed body into event records.

    Only top-level ``VEVENT`` components are kept. An entry whose times cannot
    be decoded is logged and skipped; a body that is not a calendar raises
    :class:`CalendarParseError`.
    """
    try:
        calendar = Calendar.from_ical(payload)
    except Exception as exc:
        raise CalendarParseError("ICS payload could not be parsed") from exc
    if str(getattr(calendar, "name", "")).upper() != "VCALENDAR":
        raise CalendarParseError("ICS payload is not a VCALENDAR")

    events: list[dict[str, Any]] = []
    for component in calendar.subcomponents:
        if str(getattr(component, "name", "")).upper() != "VEVENT":
            continue
        try:
            events.append(_normalise_event(component))
        except CalendarParseError as exc:
            feed_failures_total.labels(stage="entry").inc()
            _logger.warning(
                "Skipping malformed event uid=%s source=%s: %s",
                _property_text(component, "UID"),
                source,
                exc,
            )
    return events


__all__ = [
    "CalendarFetchError",
    "CalendarParseError",
    "epoch_seconds",
    "fetch_ics_url",
    "parse_ics_events",
    "validate_ics_url",
]
