from __future__ import annotations

from contextlib import contextmanager
import json
import logging
from pathlib import Path
import sqlite3
import time
from typing import Any, Callable, Iterator, Sequence, TypeVar

from .config import AppSettings

EVENTS_TABLE = "events"
_SQLITE_CONNECT_TIMEOUT_SECONDS = 30
_DEFAULT_SQLITE_BUSY_TIMEOUT_MS = 30_000
_DEFAULT_DB_RETRIES = 5
_DEFAULT_DB_BASE_SLEEP_MS = 50
_LOCK_ERROR_MARKERS = ("locked", "busy")
_T = TypeVar("_T")
_logger = logging.getLogger(__name__)

_CREATE_EVENTS_SQL = f"""
CREATE TABLE IF NOT EXISTS {EVENTS_TABLE} (
    id INTEGER PRIMARY KEY,
    "start" INTEGER,
    "end" INTEGER,
    summary TEXT,
    location TEXT,
    description TEXT,
    raw TEXT
)
"""
_CREATE_INDEXES_SQL = (
    f'CREATE INDEX IF NOT EXISTS idx_{EVENTS_TABLE}_start ON {EVENTS_TABLE} ("start")',
    f'CREATE INDEX IF NOT EXISTS idx_{EVENTS_TABLE}_end ON {EVENTS_TABLE} ("end")',
)
_INSERT_EVENT_SQL = f"""
INSERT INTO {EVENTS_TABLE} ("start", "end", summary, location, description, raw)
VALUES (?, ?, ?, ?, ?, ?)
"""


class StorageError(RuntimeError):
    """Raised when an event table operation fails."""


def _as_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    out = dict(row)
    raw = out.get("raw")
    if isinstance(raw, str):
        try:
            out["raw"] = json.loads(raw)
        except (TypeError, ValueError):
            pass
    return out


def _is_lock_or_busy_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).strip().lower()
    return any(marker in message for marker in _LOCK_ERROR_MARKERS)


def with_db_retry(
    fn: Callable[[], _T],
    *,
    retries: int = _DEFAULT_DB_RETRIES,
    base_sleep_ms: int = _DEFAULT_DB_BASE_SLEEP_MS,
) -> _T:
    attempts = max(0, int(retries))
    sleep_ms = max(0, int(base_sleep_ms))
    for attempt in range(attempts + 1):
        try:
            return fn()
        except sqlite3.OperationalError as error:
            if attempt >= attempts or not _is_lock_or_busy_error(error):
                raise
            delay_seconds = (sleep_ms * (attempt + 1)) / 1000.0
            time.sleep(delay_seconds)
    raise RuntimeError("unreachable")


def connect_db(
    path: Path,
    *,
    timeout: float = _SQLITE_CONNECT_TIMEOUT_SECONDS,
    busy_timeout_ms: int = _DEFAULT_SQLITE_BUSY_TIMEOUT_MS,
) -> sqlite3.Connection:
    db_file = Path(path)
    db_file.parent.mkdir(parents=True, exist_ok=True)
    # Transactions are managed explicitly with BEGIN/COMMIT.
    conn = sqlite3.connect(db_file, timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute(f"PRAGMA busy_timeout = {max(0, int(busy_timeout_ms))}")
    return conn


@contextmanager
def connect(
    settings: AppSettings | None = None,
    *,
    timeout: float = _SQLITE_CONNECT_TIMEOUT_SECONDS,
) -> Iterator[sqlite3.Connection]:
    cfg = settings or AppSettings()
    conn = connect_db(
        cfg.db_path,
        timeout=timeout,
        busy_timeout_ms=cfg.sqlite_busy_timeout_ms,
    )
    try:
        yield conn
    finally:
        conn.close()


def _create_events_table(conn: sqlite3.Connection) -> None:
    conn.execute(_CREATE_EVENTS_SQL)
    for statement in _CREATE_INDEXES_SQL:
        conn.execute(statement)


def init_db(settings: AppSettings | None = None) -> Path:
    cfg = settings or AppSettings()
    try:
        with connect(cfg) as conn:
            with_db_retry(lambda: _create_events_table(conn))
    except sqlite3.Error as exc:
        raise StorageError(f"Unable to initialise event store: {exc}") from exc
    return cfg.db_path


def events_table_exists(settings: AppSettings | None = None) -> bool:
    try:
        with connect(settings) as conn:
            row = conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
                (EVENTS_TABLE,),
            ).fetchone()
    except sqlite3.Error as exc:
        raise StorageError(f"Unable to inspect event store: {exc}") from exc
    return row is not None


def count_events(settings: AppSettings | None = None) -> int:
    if not events_table_exists(settings):
        return 0
    try:
        with connect(settings) as conn:
            row = conn.execute(f"SELECT COUNT(*) AS count FROM {EVENTS_TABLE}").fetchone()
    except sqlite3.Error as exc:
        raise StorageError(f"Unable to count events: {exc}") from exc
    return int(row["count"])


def is_store_empty(settings: AppSettings | None = None) -> bool:
    cfg = settings or AppSettings()
    if not Path(cfg.db_path).exists():
        return True
    return count_events(cfg) == 0


def get_event(
    event_id: int,
    *,
    settings: AppSettings | None = None,
) -> dict[str, Any] | None:
    try:
        with connect(settings) as conn:
            row = conn.execute(
                f"SELECT * FROM {EVENTS_TABLE} WHERE id = ?",
                (int(event_id),),
            ).fetchone()
    except sqlite3.Error as exc:
        raise StorageError(f"Unable to load event {event_id}: {exc}") from exc
    return _as_dict(row)


def select_events(
    where_sql: str,
    params: Sequence[Any],
    *,
    order_by_start: bool = False,
    settings: AppSettings | None = None,
) -> list[dict[str, Any]]:
    """Run one read over the current generation.

    ``where_sql`` is a conjunction built from trusted column names with
    ``?`` placeholders for every user value; an empty string selects all rows.
    Rows come back ordered by ``start`` when ``order_by_start`` is set and by
    ``id`` otherwise.
    """
    order_sql = 'ORDER BY "start", id' if order_by_start else "ORDER BY id"
    where_clause = f"WHERE {where_sql}" if where_sql else ""
    try:
        with connect(settings) as conn:
            rows = conn.execute(
                f"SELECT * FROM {EVENTS_TABLE} {where_clause} {order_sql}",
                tuple(params),
            ).fetchall()
    except sqlite3.Error as exc:
        raise StorageError(f"Unable to query events: {exc}") from exc
    return [_as_dict(row) or {} for row in rows]


def _event_row(event: dict[str, Any]) -> tuple[Any, ...]:
    raw = event.get("raw")
    if raw is not None and not isinstance(raw, str):
        raw = json.dumps(raw, ensure_ascii=False, sort_keys=True)
    return (
        event.get("start"),
        event.get("end"),
        event.get("summary"),
        event.get("location"),
        event.get("description"),
        raw,
    )


def _insert_rows(conn: sqlite3.Connection, rows: list[tuple[Any, ...]]) -> None:
    conn.executemany(_INSERT_EVENT_SQL, rows)


def replace_events(
    events: list[dict[str, Any]],
    *,
    settings: AppSettings | None = None,
) -> int:
    """Swap the stored generation for ``events`` in a single transaction.

    The table is dropped, recreated and filled between one ``BEGIN IMMEDIATE``
    and its ``COMMIT``. Under WAL, concurrent readers keep seeing the previous
    generation until the commit lands. On failure the transaction is rolled
    back and :class:`StorageError` is raised with the old rows untouched.
    """
    cfg = settings or AppSettings()
    rows = [_event_row(event) for event in events]
    started = time.monotonic()

    def _write_generation() -> int:
        with connect(cfg) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(f"DROP TABLE IF EXISTS {EVENTS_TABLE}")
                _create_events_table(conn)
                _insert_rows(conn, rows)
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        return len(rows)

    try:
        inserted = with_db_retry(_write_generation)
    except sqlite3.Error as exc:
        raise StorageError(f"Event refresh failed: {exc}") from exc
    _logger.info(
        "Stored %s events in %.0f ms",
        inserted,
        (time.monotonic() - started) * 1000,
    )
    return inserted


__all__ = [
    "EVENTS_TABLE",
    "StorageError",
    "connect",
    "connect_db",
    "count_events",
    "events_table_exists",
    "get_event",
    "init_db",
    "is_store_empty",
    "replace_events",
    "select_events",
    "with_db_retry",
]
