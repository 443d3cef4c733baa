from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from pathlib import Path
import time
from typing import Any

from fastapi.concurrency import run_in_threadpool
import httpx

from ical_api.config import AppSettings
from ical_api.db import StorageError, replace_events
from ical_api.metrics import (
    feed_failures_total,
    refresh_cycles_total,
    refresh_duration_seconds,
    stored_events,
)

from .ics import CalendarFetchError, CalendarParseError, fetch_ics_url, parse_ics_events

_logger = logging.getLogger(__name__)


class CalendarSyncError(RuntimeError):
    """Raised when a refresh cycle cannot produce a new generation."""


@dataclass
class FeedResult:
    url: str
    body: bytes | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.body is not None


@dataclass
class RefreshResult:
    feeds_total: int
    feeds_failed: list[str] = field(default_factory=list)
    events_stored: int = 0
    duration_seconds: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "feeds_total": self.feeds_total,
            "feeds_failed": list(self.feeds_failed),
            "events_stored": self.events_stored,
            "duration_seconds": round(self.duration_seconds, 3),
        }


def read_feed_links(path: Path) -> list[str]:
    """Read one feed URL per line, skipping blanks and ``#`` comments."""
    links_file = Path(path)
    if not links_file.exists():
        _logger.warning("Feed list %s does not exist", links_file)
        return []
    links: list[str] = []
    for line in links_file.read_text(encoding="utf-8").splitlines():
        link = line.strip()
        if not link or link.startswith("#"):
            continue
        links.append(link)
    return links


async def _fetch_feed(url: str, *, client: httpx.AsyncClient, settings: AppSettings) -> FeedResult:
    try:
        body = await fetch_ics_url(
            url,
            timeout_seconds=float(settings.fetch_timeout_seconds),
            max_bytes=int(settings.fetch_max_bytes),
            max_redirects=int(settings.fetch_max_redirects),
            attempts=int(settings.fetch_attempts),
            retry_wait_seconds=float(settings.fetch_retry_wait_seconds),
            client=client,
        )
    except CalendarFetchError as exc:
        feed_failures_total.labels(stage="fetch").inc()
        _logger.warning("Feed fetch failed url=%s: %s", url, exc)
        return FeedResult(url=url, error=str(exc))
    return FeedResult(url=url, body=body)


async def fetch_feeds(urls: list[str], *, settings: AppSettings) -> list[FeedResult]:
    """Fetch every feed concurrently; a failing feed never aborts the others."""
    started = time.monotonic()
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(float(settings.fetch_timeout_seconds)),
        follow_redirects=True,
        max_redirects=int(settings.fetch_max_redirects),
    ) as client:
        results = await asyncio.gather(
            *(_fetch_feed(url, client=client, settings=settings) for url in urls)
        )
    _logger.info(
        "Fetched %s/%s feeds in %.0f ms",
        sum(1 for item in results if item.ok),
        len(results),
        (time.monotonic() - started) * 1000,
    )
    return list(results)


def parse_feeds(feeds: list[FeedResult]) -> tuple[list[dict[str, Any]], list[str]]:
    events: list[dict[str, Any]] = []
    failed: list[str] = []
    for feed in feeds:
        if feed.body is None:
            continue
        try:
            events.extend(parse_ics_events(feed.body, source=feed.url))
        except CalendarParseError as exc:
            feed_failures_total.labels(stage="parse").inc()
            _logger.warning("Feed parse failed url=%s: %s", feed.url, exc)
            failed.append(feed.url)
    return events, failed


def _parse_and_store(feeds: list[FeedResult], settings: AppSettings) -> tuple[int, list[str]]:
    events, parse_failed = parse_feeds(feeds)
    if len(parse_failed) + sum(1 for feed in feeds if not feed.ok) >= len(feeds):
        raise CalendarSyncError("No feed could be fetched and parsed; keeping current events")
    return replace_events(events, settings=settings), parse_failed


async def refresh_events(settings: AppSettings) -> RefreshResult:
    """Run one fetch-parse-replace cycle over the configured feed list."""
    started = time.monotonic()
    try:
        urls = read_feed_links(settings.links_path)
        if not urls:
            raise CalendarSyncError(f"No feed sources configured in {settings.links_path}")
        feeds = await fetch_feeds(urls, settings=settings)
        stored, parse_failed = await run_in_threadpool(_parse_and_store, feeds, settings)
    except (CalendarSyncError, StorageError):
        refresh_cycles_total.labels(outcome="failed").inc()
        raise
    duration = time.monotonic() - started
    refresh_cycles_total.labels(outcome="ok").inc()
    refresh_duration_seconds.observe(duration)
    stored_events.set(stored)
    result = RefreshResult(
        feeds_total=len(urls),
        feeds_failed=[feed.url for feed in feeds if not feed.ok] + parse_failed,
        events_stored=stored,
        duration_seconds=duration,
    )
    _logger.info(
        "Refresh done: %s events from %s feeds (%s failed) in %.0f ms",
        result.events_stored,
        result.feeds_total,
        len(result.feeds_failed),
        duration * 1000,
    )
    return result


__all__ = [
    "CalendarSyncError",
    "FeedResult",
    "RefreshResult",
    "fetch_feeds",
    "parse_feeds",
    "read_feed_links",
    "refresh_events",
]
