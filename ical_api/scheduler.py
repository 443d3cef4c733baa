from __future__ import annotations

import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import enum
import logging
from typing import Any, Awaitable, Callable

from fastapi.concurrency import run_in_threadpool

_logger = logging.getLogger(__name__)


class SchedulerState(str, enum.Enum):
    COLD = "cold"
    WARM = "warm"


class RefreshScheduler:
    """Single background loop driving refresh cycles.

    Starts ``COLD``; an immediate refresh runs when ``is_store_empty`` reports
    no usable data, and the first successful refresh moves to ``WARM``. After
    that the loop sleeps ``interval_seconds`` (or until :meth:`trigger`) and
    refreshes again, forever. Failures are logged and wait for the next turn.
    """

    def __init__(
        self,
        refresh: Callable[[], Awaitable[Any]],
        *,
        is_store_empty: Callable[[], bool],
        interval_seconds: float,
    ) -> None:
        self._refresh = refresh
        self._is_store_empty = is_store_empty
        self.interval_seconds = float(interval_seconds)
        self.state = SchedulerState.COLD
        self.last_refresh_at: str | None = None
        self.last_error: str | None = None
        self.last_result: Any = None
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self) -> None:
        """Run the next refresh now instead of after the interval."""
        self._wake.set()

    async def run_once(self) -> bool:
        try:
            result = await self._refresh()
        except Exception as exc:
            self.last_error = str(exc) or exc.__class__.__name__
            _logger.exception("Refresh cycle failed")
            return False
        self.last_result = result
        self.last_error = None
        self.last_refresh_at = datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()
        if self.state is SchedulerState.COLD:
            _logger.info("Event store is warm")
        self.state = SchedulerState.WARM
        return True

    async def _needs_initial_refresh(self) -> bool:
        try:
            return bool(await run_in_threadpool(self._is_store_empty))
        except Exception:
            _logger.exception("Could not inspect event store; refreshing")
            return True

    async def _wait_for_next_cycle(self) -> None:
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._wake.wait(), timeout=self.interval_seconds)
        self._wake.clear()

    async def run_forever(self) -> None:
        if await self._needs_initial_refresh():
            _logger.info("Event store is empty; running initial refresh")
            await self.run_once()
        else:
            self.state = SchedulerState.WARM
        while True:
            await self._wait_for_next_cycle()
            await self.run_once()

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "last_refresh_at": self.last_refresh_at,
            "last_error": self.last_error,
        }


__all__ = ["RefreshScheduler", "SchedulerState"]
