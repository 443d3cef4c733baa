from .encoder import ICAL_MEDIA_TYPE, CalendarEncodeError, render_calendar
from .ics import (
    CalendarFetchError,
    CalendarParseError,
    epoch_seconds,
    fetch_ics_url,
    parse_ics_events,
    validate_ics_url,
)
from .service import (
    CalendarSyncError,
    FeedResult,
    RefreshResult,
    fetch_feeds,
    parse_feeds,
    read_feed_links,
    refresh_events,
)

__all__ = [
    "CalendarEncodeError",
    "CalendarFetchError",
    "CalendarParseError",
    "CalendarSyncError",
    "FeedResult",
    "ICAL_MEDIA_TYPE",
    "RefreshResult",
    "epoch_seconds",
    "fetch_feeds",
    "fetch_ics_url",
    "parse_feeds",
    "parse_ics_events",
    "read_feed_links",
    "refresh_events",
    "render_calendar",
    "validate_ics_url",
]
