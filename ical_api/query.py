"""Search parameter validation and the two-stage event filter.

A search is first turned into a list of :class:`FilterClause` objects. The
whole list is validated before anything touches the store; storage-side
clauses then become one SQL conjunction, and ``regex`` clauses run
in-process over the rows that query returns.

Regex evaluation is the expensive path: every candidate row is matched in
Python. Patterns and inspected values are length-capped and the stage as a
whole has a wall-clock budget, checked between rows.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
import logging
import re
import time
from typing import Any, Literal, Sequence

from icalendar import vDate, vDatetime
from pydantic import BaseModel

from .calendar.ics import epoch_seconds
from .config import AppSettings
from .db import select_events

_logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("json", "ical", "ics")
RAW_MODES = ("only", "exclude")
MATCH_STRICT = "strict"
MATCH_SUBSTRING = "substring"
MATCH_REGEX = "regex"
MATCH_MODES = (MATCH_STRICT, MATCH_SUBSTRING, MATCH_REGEX)
TEXT_FIELDS = ("location", "summary", "description")
DATE_PARAMETERS = ("start", "end", "after", "before")
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}
_NUMERIC_RE = re.compile(r"^[+-]?\d+$")
# SQLite INTEGER range
SQLITE_INT_MIN = -(2**63)
SQLITE_INT_MAX = 2**63 - 1

# query parameter -> (column, operator)
_DATE_CLAUSES = {
    "start": ("start", "eq"),
    "end": ("end", "eq"),
    "after": ("start", "gte"),
    "before": ("end", "lte"),
}
_SQL_OPERATORS = {"eq": "= ?", "gte": ">= ?", "lte": "<= ?"}

Operator = Literal["eq", "gte", "lte", "contains", "regex"]


class QueryValidationError(ValueError):
    """Raised for search input the client has to fix (HTTP 400)."""


@dataclass(frozen=True)
class DateBound:
    kind: Literal["numeric", "parsed", "invalid"]
    seconds: int | None = None

    @property
    def valid(self) -> bool:
        return self.kind != "invalid"


@dataclass(frozen=True)
class FilterClause:
    field: str
    operator: Operator
    value: Any
    match_mode: str | None = None

    @property
    def in_store(self) -> bool:
        return self.operator != "regex"


class SearchQuery(BaseModel):
    start: str | None = None
    end: str | None = None
    after: str | None = None
    before: str | None = None
    location: str | None = None
    summary: str | None = None
    description: str | None = None
    locationMatchType: str | None = None
    summaryMatchType: str | None = None
    descriptionMatchType: str | None = None
    raw: str | None = None
    sort: str | None = None
    format: str | None = None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_calendar_text(text: str) -> date | datetime | None:
    candidate = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        pass
    try:
        return date.fromisoformat(candidate)
    except ValueError:
        pass
    for parser in (vDatetime.from_ical, vDate.from_ical):
        try:
            return parser(text)
        except Exception:
            continue
    return None


def parse_date_bound(value: str | int | None, *, offset_seconds: int) -> DateBound:
    """Classify a user-supplied bound as epoch seconds or calendar text.

    Only calendar text gets ``offset_seconds`` subtracted; naive text is read
    as UTC before the correction.
    """
    if isinstance(value, bool):
        return DateBound("invalid")
    if isinstance(value, int):
        return _bounded("numeric", value)
    text = _clean(value)
    if text is None:
        return DateBound("invalid")
    if _NUMERIC_RE.match(text):
        return _bounded("numeric", int(text))
    parsed = _parse_calendar_text(text)
    if parsed is None:
        return DateBound("invalid")
    try:
        seconds = epoch_seconds(parsed)
    except (OverflowError, ValueError):
        return DateBound("invalid")
    return _bounded("parsed", seconds - int(offset_seconds))


def _bounded(kind: str, seconds: int) -> DateBound:
    if not SQLITE_INT_MIN <= seconds <= SQLITE_INT_MAX:
        return DateBound("invalid")
    return DateBound(kind, seconds)


def parse_bool_flag(value: str | None, *, name: str) -> bool:
    text = _clean(value)
    if text is None:
        return False
    lowered = text.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise QueryValidationError(f"Invalid value for {name}: expected a boolean")


def normalise_format(value: str | None) -> str:
    fmt = (_clean(value) or "json").lower()
    if fmt not in OUTPUT_FORMATS:
        raise QueryValidationError("Invalid format")
    return fmt


def normalise_raw_mode(value: str | None) -> str | None:
    mode = _clean(value)
    if mode is None:
        return None
    mode = mode.lower()
    if mode not in RAW_MODES:
        raise QueryValidationError(f"Invalid raw mode: expected one of {', '.join(RAW_MODES)}")
    return mode


def build_search_clauses(query: SearchQuery, settings: AppSettings) -> list[FilterClause]:
    """Validate every filter parameter and return the clause list.

    All invalid date bounds are reported together.
    """
    clauses: list[FilterClause] = []
    invalid_dates: list[str] = []
    for name in DATE_PARAMETERS:
        raw_value = _clean(getattr(query, name))
        if raw_value is None:
            continue
        bound = parse_date_bound(raw_value, offset_seconds=settings.source_offset_seconds)
        if not bound.valid:
            invalid_dates.append(name)
            continue
        column, operator = _DATE_CLAUSES[name]
        clauses.append(FilterClause(column, operator, bound.seconds))
    if invalid_dates:
        raise QueryValidationError(f"Invalid date for parameter(s): {', '.join(invalid_dates)}")

    for field in TEXT_FIELDS:
        value = getattr(query, field)
        mode_value = _clean(getattr(query, f"{field}MatchType"))
        mode = mode_value.lower() if mode_value else MATCH_SUBSTRING
        if mode not in MATCH_MODES:
            raise QueryValidationError(
                f"Invalid {field}MatchType: expected one of {MATCH_STRICT}, {MATCH_REGEX}"
            )
        if mode == MATCH_REGEX:
            if not value:
                raise QueryValidationError(f"{field}MatchType=regex requires a {field} value")
            if len(value) > settings.regex_max_pattern_length:
                raise QueryValidationError(
                    f"{field} pattern exceeds {settings.regex_max_pattern_length} characters"
                )
            try:
                pattern = re.compile(value)
            except re.error as exc:
                raise QueryValidationError(f"Invalid regex for {field}: {exc}") from exc
            clauses.append(FilterClause(field, "regex", pattern, MATCH_REGEX))
            continue
        if not value:
            continue
        if mode == MATCH_STRICT:
            clauses.append(FilterClause(field, "eq", value, MATCH_STRICT))
        else:
            clauses.append(FilterClause(field, "contains", value, MATCH_SUBSTRING))
    return clauses


def clauses_to_sql(clauses: Sequence[FilterClause]) -> tuple[str, list[Any]]:
    parts: list[str] = []
    params: list[Any] = []
    for clause in clauses:
        if not clause.in_store:
            continue
        column = f'"{clause.field}"'
        if clause.operator == "contains":
            # instr() keeps substring matching case-sensitive, unlike LIKE.
            parts.append(f"instr({column}, ?) > 0")
        else:
            parts.append(f"{column} {_SQL_OPERATORS[clause.operator]}")
        params.append(clause.value)
    return " AND ".join(parts), params


def apply_regex_clauses(
    rows: list[dict[str, Any]],
    clauses: Sequence[FilterClause],
    settings: AppSettings,
) -> list[dict[str, Any]]:
    regex_clauses = [clause for clause in clauses if clause.operator == "regex"]
    if not regex_clauses:
        return rows
    max_length = int(settings.regex_max_value_length)
    deadline = time.monotonic() + float(settings.regex_time_budget_seconds)
    out: list[dict[str, Any]] = []
    for row in rows:
        if time.monotonic() > deadline:
            _logger.warning(
                "Regex filter exceeded %.1fs budget after %s rows",
                settings.regex_time_budget_seconds,
                len(out),
            )
            raise QueryValidationError("Regex filter exceeded the evaluation time budget")
        matched = True
        for clause in regex_clauses:
            value = row.get(clause.field)
            if value is None or not clause.value.search(str(value)[:max_length]):
                matched = False
                break
        if matched:
            out.append(row)
    return out


def run_search(
    clauses: Sequence[FilterClause],
    *,
    sort: bool,
    settings: AppSettings,
) -> list[dict[str, Any]]:
    where_sql, params = clauses_to_sql(clauses)
    rows = select_events(where_sql, params, order_by_start=sort, settings=settings)
    return apply_regex_clauses(rows, clauses, settings)


def project_rows(rows: list[dict[str, Any]], *, raw_mode: str | None, fmt: str) -> list[dict[str, Any]]:
    if fmt == "json" and raw_mode == "only":
        return [{"id": row.get("id"), "raw": row.get("raw")} for row in rows]
    if fmt != "json" or raw_mode == "exclude":
        return [{key: value for key, value in row.items() if key != "raw"} for row in rows]
    return rows


__all__ = [
    "SQLITE_INT_MAX",
    "SQLITE_INT_MIN",
    "DateBound",
    "FilterClause",
    "QueryValidationError",
    "SearchQuery",
    "apply_regex_clauses",
    "build_search_clauses",
    "clauses_to_sql",
    "normalise_format",
    "normalise_raw_mode",
    "parse_bool_flag",
    "parse_date_bound",
    "project_rows",
    "run_search",
]
