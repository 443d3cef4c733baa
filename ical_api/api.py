from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from .calendar import ICAL_MEDIA_TYPE, CalendarEncodeError, refresh_events, render_calendar
from .config import AppSettings
from .db import StorageError, count_events, get_event, init_db, is_store_empty
from .healthchecks import collect_health_checks
from .query import (
    SQLITE_INT_MAX,
    QueryValidationError,
    SearchQuery,
    build_search_clauses,
    normalise_format,
    normalise_raw_mode,
    parse_bool_flag,
    project_rows,
    run_search,
)
from .scheduler import RefreshScheduler

_settings = AppSettings()
_scheduler: RefreshScheduler | None = None
_logger = logging.getLogger(__name__)
_INTERNAL_ERROR = "Internal Server Error"
_INDEX_HTML = (
    "<p>Calendar events API. Endpoints: "
    "<code>/search</code>, <code>/id/&lt;id&gt;</code>, <code>/length</code>, "
    "<code>/healthz</code>, <code>/metrics</code>.</p>"
)


def _build_scheduler(settings: AppSettings) -> RefreshScheduler:
    async def _refresh():
        return (await refresh_events(settings)).as_dict()

    return RefreshScheduler(
        _refresh,
        is_store_empty=lambda: is_store_empty(settings),
        interval_seconds=settings.refresh_interval_seconds,
    )


@asynccontextmanager
async def _lifespan(_: FastAPI):
    global _scheduler
    await run_in_threadpool(init_db, _settings)
    _scheduler = _build_scheduler(_settings)
    _scheduler.start()
    try:
        yield
    finally:
        await _scheduler.stop()


app = FastAPI(lifespan=_lifespan)


@app.exception_handler(StarletteHTTPException)
async def _http_error(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def _validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
    _logger.debug("Rejected request parameters: %s", exc.errors())
    return JSONResponse(status_code=400, content={"error": "Invalid request parameters"})


@app.exception_handler(Exception)
async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    _logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": _INTERNAL_ERROR})


def _calendar_response(records: list[dict[str, Any]], *, operation: str) -> Response:
    try:
        body = render_calendar(records, settings=_settings)
    except CalendarEncodeError:
        _logger.exception("%s: calendar encoding failed", operation)
        raise HTTPException(status_code=500, detail=_INTERNAL_ERROR)
    return Response(content=body, media_type=ICAL_MEDIA_TYPE)


@app.get("/", response_class=HTMLResponse)
async def index() -> str:
    return _INDEX_HTML


@app.get("/healthz")
async def healthz() -> dict[str, object]:
    checks = await run_in_threadpool(collect_health_checks, _settings, _scheduler)
    return {
        "status": "ok" if all(item["ok"] for item in checks.values()) else "degraded",
        "checks": checks,
    }


@app.get("/metrics")
async def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/length")
async def length() -> dict[str, int]:
    try:
        count = await run_in_threadpool(count_events, _settings)
    except StorageError:
        _logger.exception("Counting events failed")
        raise HTTPException(status_code=500, detail=_INTERNAL_ERROR)
    return {"count": count}


@app.get("/id/{event_id}")
async def get_event_by_id(
    event_id: str,
    fmt: str | None = Query(default=None, alias="format"),
):
    try:
        output_format = normalise_format(fmt)
    except QueryValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if not (event_id.isascii() and event_id.isdigit()):
        raise HTTPException(status_code=400, detail="Invalid id")
    if int(event_id) > SQLITE_INT_MAX:
        raise HTTPException(status_code=404, detail="Event not found")

    try:
        item = await run_in_threadpool(get_event, int(event_id), settings=_settings)
    except StorageError:
        _logger.exception("Event lookup failed id=%s", event_id)
        raise HTTPException(status_code=500, detail=_INTERNAL_ERROR)
    if item is None:
        raise HTTPException(status_code=404, detail="Event not found")

    if output_format == "json":
        return item
    records = project_rows([item], raw_mode=None, fmt=output_format)
    return _calendar_response(records, operation="get_event_by_id")


def _search(query: SearchQuery, settings: AppSettings) -> tuple[str, list[dict[str, Any]]]:
    output_format = normalise_format(query.format)
    raw_mode = normalise_raw_mode(query.raw)
    sort = parse_bool_flag(query.sort, name="sort")
    clauses = build_search_clauses(query, settings)
    rows = run_search(clauses, sort=sort, settings=settings)
    return output_format, project_rows(rows, raw_mode=raw_mode, fmt=output_format)


@app.get("/search")
async def search(
    start: str | None = Query(default=None),
    end: str | None = Query(default=None),
    after: str | None = Query(default=None),
    before: str | None = Query(default=None),
    location: str | None = Query(default=None),
    summary: str | None = Query(default=None),
    description: str | None = Query(default=None),
    location_match_type: str | None = Query(default=None, alias="locationMatchType"),
    summary_match_type: str | None = Query(default=None, alias="summaryMatchType"),
    description_match_type: str | None = Query(default=None, alias="descriptionMatchType"),
    raw: str | None = Query(default=None),
    sort: str | None = Query(default=None),
    fmt: str | None = Query(default=None, alias="format"),
):
    query = SearchQuery(
        start=start,
        end=end,
        after=after,
        before=before,
        location=location,
        summary=summary,
        description=description,
        locationMatchType=location_match_type,
        summaryMatchType=summary_match_type,
        descriptionMatchType=description_match_type,
        raw=raw,
        sort=sort,
        format=fmt,
    )
    try:
        output_format, rows = await run_in_threadpool(_search, query, _settings)
    except QueryValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except StorageError:
        _logger.exception("Event search failed")
        raise HTTPException(status_code=500, detail=_INTERNAL_ERROR)

    if output_format == "json":
        return rows
    return _calendar_response(rows, operation="search")


__all__ = ["app", "healthz"]
