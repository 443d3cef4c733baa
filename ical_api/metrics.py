from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

refresh_cycles_total = Counter(
    "ical_api_refresh_cycles_total",
    "Completed refresh cycles by outcome",
    ["outcome"],
)

refresh_duration_seconds = Histogram(
    "ical_api_refresh_duration_seconds",
    "Wall time of one fetch-parse-replace cycle",
    buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, 120),
)

feed_failures_total = Counter(
    "ical_api_feed_failures_total",
    "Feeds or entries dropped during ingestion",
    ["stage"],
)

stored_events = Gauge("ical_api_stored_events", "Events in the current generation")


__all__ = [
    "feed_failures_total",
    "refresh_cycles_total",
    "refresh_duration_seconds",
    "stored_events",
]
