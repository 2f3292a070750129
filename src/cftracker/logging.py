"""Structured logging configuration for the cftracker service.

Log streams:

- ``server.log``: human-readable, every event (API, scheduler, storage)
- ``sync.log``: JSON lines, only ``cftracker.sync.*`` events, for tooling

Files rotate at 10 MB with 5 backups. Without a log directory (``sync``
one-shots, tests) events go to stderr in the human-readable format.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
_BACKUP_COUNT = 5

SERVER_LOG = "server.log"
SYNC_LOG = "sync.log"

_NOISY_LOGGERS = ("uvicorn", "uvicorn.access", "uvicorn.error", "httpx", "httpcore", "aiosqlite")

# Applied to structlog events and to stdlib records from libraries alike.
_shared_processors: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.ExtraAdder(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
]


def _formatter(renderer: structlog.types.Processor) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=_shared_processors,
    )


def _rotating_handler(path: Path, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=_MAX_BYTES,
        backupCount=_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setFormatter(formatter)
    return handler


def _install_excepthook() -> None:
    """Route uncaught exceptions to the ``cftracker`` logger as critical."""

    def _excepthook(
        exc_type: type[BaseException],
        exc_value: BaseException,
        exc_tb: object,
    ) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
            return
        logging.getLogger("cftracker").critical(
            "Unhandled exception",
            exc_info=(exc_type, exc_value, exc_tb),
        )

    sys.excepthook = _excepthook  # type: ignore[assignment]


def setup_logging(log_level: str = "info", log_dir: Path | None = None) -> None:
    """Configure structlog and stdlib logging.

    Parameters
    ----------
    log_level:
        Python log-level name (``debug``, ``info``, ``warning``, etc.).
    log_dir:
        Directory for ``server.log`` and ``sync.log``.  When *None* events
        are written to stderr only.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    # -- structlog pipeline (structlog → stdlib bridge) ---------------------
    structlog.configure(
        processors=[
            *_shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    human = _formatter(structlog.dev.ConsoleRenderer(colors=False))

    # -- handlers ----------------------------------------------------------
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if log_dir is None:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(human)
        root.addHandler(stderr_handler)
    else:
        log_dir.mkdir(parents=True, exist_ok=True)
        root.addHandler(_rotating_handler(log_dir / SERVER_LOG, human))

        sync_handler = _rotating_handler(
            log_dir / SYNC_LOG,
            _formatter(structlog.processors.JSONRenderer()),
        )
        sync_handler.addFilter(logging.Filter("cftracker.sync"))
        root.addHandler(sync_handler)

    # -- third-party noise -------------------------------------------------
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _install_excepthook()
