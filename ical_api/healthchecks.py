from __future__ import annotations

from typing import Any

from .config import AppSettings
from .db import count_events
from .scheduler import RefreshScheduler, SchedulerState


def _ok(component: str, detail: str = "ok", **extra: Any) -> dict[str, Any]:
    return {"component": component, "ok": True, "detail": detail, **extra}


def _fail(component: str, detail: str, **extra: Any) -> dict[str, Any]:
    return {"component": component, "ok": False, "detail": detail, **extra}


def check_app_health() -> dict[str, Any]:
    return _ok("app")


def check_db_health(settings: AppSettings | None = None) -> dict[str, Any]:
    cfg = settings or AppSettings()
    try:
        count = count_events(cfg)
    except Exception as exc:
        return _fail("db", str(exc))
    return _ok("db", events=count)


def check_scheduler_health(scheduler: RefreshScheduler | None) -> dict[str, Any]:
    if scheduler is None:
        return _fail("scheduler", "not started")
    snapshot = scheduler.snapshot()
    if scheduler.state is SchedulerState.COLD:
        return _fail("scheduler", snapshot["last_error"] or "waiting for first refresh", **snapshot)
    return _ok("scheduler", **snapshot)


def collect_health_checks(
    settings: AppSettings | None,
    scheduler: RefreshScheduler | None,
) -> dict[str, dict[str, Any]]:
    cfg = settings or AppSettings()
    return {
        "app": check_app_health(),
        "db": check_db_health(cfg),
        "scheduler": check_scheduler_health(scheduler),
    }


__all__ = [
    "check_app_health",
    "check_db_health",
    "check_scheduler_health",
    "collect_health_checks",
]
