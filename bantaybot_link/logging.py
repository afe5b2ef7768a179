"""Logging setup for the bantaybot-link service and CLI."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Iterable, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Transport libraries that log every request, frame or packet at INFO/DEBUG.
NETWORK_LOGGERS = ("aiohttp.access", "aiohttp.client", "aiohttp.websocket", "paho")

LOG_FILE_MAX_BYTES = 1_000_000
LOG_FILE_BACKUPS = 3


def _level(name: str) -> int:
    return getattr(logging, name.strip().upper(), logging.INFO)


def configure_logging(
    level: str = "INFO",
    *,
    log_path: Optional[Path] = None,
    log_network: bool = False,
    network_loggers: Iterable[str] = NETWORK_LOGGERS,
) -> None:
    """Replace the root handlers with console (and optional file) output.

    The field unit runs for weeks at a time, so the file handler rotates
    at :data:`LOG_FILE_MAX_BYTES`. Unless ``log_network`` is set, the
    chatty transport loggers are held at WARNING.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    logging.basicConfig(level=_level(level), format=LOG_FORMAT)

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    network_level = logging.NOTSET if log_network else logging.WARNING
    for name in network_loggers:
        logging.getLogger(name).setLevel(network_level)
