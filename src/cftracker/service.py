"""Foreground service: hosts the REST API and the background sync scheduler."""

from __future__ import annotations

import asyncio
import contextlib
import signal

import structlog
import uvicorn

from cftracker.config import AppConfig, ensure_dirs, load_config

log = structlog.get_logger(__name__)


class Service:
    """Wires storage, the sync engine, the scheduler and the HTTP server together."""

    def __init__(self, config: AppConfig | None = None) -> None:
        self.config: AppConfig = config or load_config()

    def run(self) -> None:
        """Block until the service receives SIGINT/SIGTERM."""
        asyncio.run(self._async_main())

    async def _async_main(self) -> None:
        from cftracker.server.api import create_app
        from cftracker.server.state import AppState
        from cftracker.storage import Database
        from cftracker.sync.engine import SyncEngine
        from cftracker.sync.scheduler import SyncScheduler

        ensure_dirs()
        cfg = self.config
        state = AppState(cfg)

        db = Database(cfg.db_path)
        await db.connect()

        engine = SyncEngine(cfg, db)
        scheduler = SyncScheduler(engine, interval_minutes=cfg.sync.interval_minutes)
        state.engine = engine
        state.scheduler = scheduler

        # Disabled means paused; the loop itself always runs.
        if not cfg.sync.enabled:
            scheduler.pause()
            log.info("scheduler_disabled")
        await scheduler.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, state.request_shutdown)

        app = create_app(state, db)
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=cfg.server.host,
                port=cfg.server.port,
                log_level=cfg.server.log_level,
                loop="asyncio",
            )
        )
        server_task = asyncio.create_task(server.serve())
        shutdown_task = asyncio.create_task(state.shutdown_event.wait())
        log.info("service_started", host=cfg.server.host, port=cfg.server.port)

        # uvicorn may handle the signal itself and exit on its own.
        await asyncio.wait({server_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)

        log.info("initiating_graceful_shutdown")

        # Waits for an in-progress sync.
        await scheduler.stop()

        server.should_exit = True
        await server_task
        shutdown_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await shutdown_task

        await db.close()
        log.info("service_shut_down_cleanly")
