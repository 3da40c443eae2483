"""Logging for the CLI and the API server.

The terminal (stderr) shows warnings, or everything with ``-v``.  The
server additionally keeps a rotating ``qanalytics.log`` whose level comes
from the ``log_level`` setting (``QANALYTICS_LOG_LEVEL``), so a session's
open/restore/rotate trail survives after the terminal is gone.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from qanalytics.config import QAnalyticsSettings, load_settings

_LOG_FILENAME = "qanalytics.log"
_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 2

_TERMINAL_FORMAT = "%(levelname)s | %(name)s | %(message)s"
_FILE_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"

# Per-request and per-statement chatter from the server stack
_QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "multipart": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


def _parse_log_level(level_str: str) -> int:
    """Level name (any case) to its logging constant; INFO when unknown."""
    numeric = getattr(logging, level_str.upper(), None)
    if isinstance(numeric, int):
        return numeric
    return logging.INFO


def _terminal_handler(verbose: bool) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    handler.setFormatter(logging.Formatter(_TERMINAL_FORMAT))
    return handler


def _file_handler(log_dir: Path, level: int) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / _LOG_FILENAME,
        maxBytes=_MAX_BYTES,
        backupCount=_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging(
    *,
    log_dir: Path | None = None,
    verbose: bool = False,
    settings: QAnalyticsSettings | None = None,
) -> None:
    """Install the terminal handler and, when *log_dir* is given, the log file.

    Safe to call more than once; earlier handlers are replaced.  The file
    level is read from *settings* (loaded from the environment when omitted).
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

    # Handlers filter independently
    root.setLevel(logging.DEBUG)
    root.addHandler(_terminal_handler(verbose))

    if log_dir is not None:
        settings = settings or load_settings()
        root.addHandler(_file_handler(log_dir, _parse_log_level(settings.log_level)))

    for name, level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)
