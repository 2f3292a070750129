"""Runtime state shared between the API and the background scheduler."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

from cftracker.config import AppConfig

if TYPE_CHECKING:
    from cftracker.sync.engine import SyncEngine
    from cftracker.sync.scheduler import SyncScheduler

log = structlog.get_logger(__name__)


class AppState:
    """Holds mutable runtime state shared across the service."""

    def __init__(self, config: AppConfig | None = None) -> None:
        self.config: AppConfig = config or AppConfig()
        self.started_at: datetime = datetime.now(timezone.utc)
        self.shutdown_event: asyncio.Event = asyncio.Event()
        self.engine: SyncEngine | None = None
        self.scheduler: SyncScheduler | None = None

    # -- queries ------------------------------------------------------------

    @property
    def uptime_seconds(self) -> float:
        return round((datetime.now(timezone.utc) - self.started_at).total_seconds(), 2)

    def get_status(self) -> dict:
        """Return a snapshot of the current service status."""
        status: dict = {
            "uptime_seconds": self.uptime_seconds,
            "started_at": self.started_at.isoformat(),
        }
        if self.engine:
            status["sync"] = self.engine.get_status()
        if self.scheduler:
            status["scheduler"] = self.scheduler.get_status()
        return status

    # -- mutations ----------------------------------------------------------

    def request_shutdown(self) -> None:
        """Signal the service to shut down gracefully."""
        log.info("shutdown_requested")
        self.shutdown_event.set()
