"""Sync scheduler. Runs the sync engine on a configurable interval."""

from __future__ import annotations

import asyncio
import contextlib
import time
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from cftracker.sync.engine import SyncInProgressError

if TYPE_CHECKING:
    from cftracker.sync.engine import SyncEngine

log = structlog.get_logger(__name__)


class SyncScheduler:
    """Schedules periodic syncs of stale students, with manual and forced triggers.

    A scheduled run or a plain :meth:`trigger_now` syncs only students whose
    data is stale; ``trigger_now(force=True)`` syncs every student.
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval_minutes: int = 1440,
        *,
        run_on_start: bool = True,
    ) -> None:
        self._engine = engine
        self._interval = interval_minutes * 60  # seconds
        self._run_on_start = run_on_start
        self._paused = False
        self._syncing = False
        self._stop_event = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._trigger_pending = False
        self._force_pending = False
        self._task: asyncio.Task | None = None
        self._last_sync_at: datetime | None = None
        self._next_sync_at: datetime | None = None
        self._last_result: dict | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def interval_minutes(self) -> int:
        return self._interval // 60

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        log.info("scheduler_started", interval_minutes=self.interval_minutes)

    async def stop(self) -> None:
        """Stop the scheduler, waiting for any in-progress sync to complete."""
        if not self.is_running:
            return
        self._stop_event.set()
        self._wake_event.set()
        if self._task:
            await self._task
            self._task = None
        self._next_sync_at = None
        log.info("scheduler_stopped")

    def trigger_now(self, *, force: bool = False) -> None:
        """Trigger an immediate sync; ``force`` syncs all students instead of stale ones."""
        self._trigger_pending = True
        self._force_pending = self._force_pending or force
        self._wake_event.set()

    def reschedule(self, interval_minutes: int) -> None:
        """Change the interval; the next run is recomputed from now."""
        if interval_minutes < 1:
            msg = "interval_minutes must be at least 1"
            raise ValueError(msg)
        self._interval = interval_minutes * 60
        self._wake_event.set()
        log.info("scheduler_rescheduled", interval_minutes=interval_minutes)

    def pause(self) -> None:
        self._paused = True
        log.info("scheduler_paused")

    def resume(self) -> None:
        self._paused = False
        log.info("scheduler_resumed")

    def get_status(self) -> dict:
        return {
            "running": self.is_running,
            "paused": self._paused,
            "syncing": self._syncing,
            "interval_minutes": self.interval_minutes,
            "last_sync_at": self._last_sync_at.isoformat() if self._last_sync_at else None,
            "next_sync_at": (
                self._next_sync_at.isoformat() if self._next_sync_at and not self._paused else None
            ),
            "last_result": self._last_result,
        }

    async def _loop(self) -> None:
        first_run = self._run_on_start
        while not self._stop_event.is_set():
            timed_out = False
            if first_run:
                # First run syncs immediately
                first_run = False
                self._next_sync_at = datetime.now(UTC).replace(microsecond=0)
                timed_out = True
            else:
                self._next_sync_at = datetime.now(UTC).replace(microsecond=0) + timedelta(
                    seconds=self._interval
                )
                if not self._wake_event.is_set():
                    try:
                        await asyncio.wait_for(self._wait_for_wake_or_stop(), timeout=self._interval)
                    except TimeoutError:
                        timed_out = True

            if self._stop_event.is_set():
                break

            self._wake_event.clear()
            triggered = self._trigger_pending
            force = self._force_pending
            self._trigger_pending = False
            self._force_pending = False

            if not (timed_out or triggered):
                # Woken by reschedule only
                continue

            if self._paused:
                if triggered:
                    log.info("scheduler_trigger_ignored_paused")
                continue

            await self._run(force=force)

    async def _run(self, *, force: bool) -> None:
        started = time.monotonic()
        self._syncing = True
        try:
            if force:
                stats = await self._engine.sync_all()
            else:
                stats = await self._engine.sync_stale()
        except SyncInProgressError:
            log.warning("scheduled_sync_skipped", reason="already_running")
            return
        except Exception as exc:
            log.error("scheduled_sync_failed", error=str(exc))
            self._last_result = {
                "success": False,
                "students_processed": 0,
                "errors": 1,
                "duration_ms": round((time.monotonic() - started) * 1000),
            }
            return
        finally:
            self._syncing = False

        self._last_sync_at = datetime.now(UTC)
        self._last_result = {
            "success": stats.failed_syncs == 0,
            "students_processed": stats.successful_syncs,
            "errors": stats.failed_syncs,
            "duration_ms": round((time.monotonic() - started) * 1000),
        }

    async def _wait_for_wake_or_stop(self) -> None:
        """Wait until either the wake or the stop event is set."""
        wake_task = asyncio.create_task(self._wake_event.wait())
        stop_task = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait(
                {wake_task, stop_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for t in (wake_task, stop_task):
                if not t.done():
                    t.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await t
