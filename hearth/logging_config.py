"""Logging setup for hearth.

Library modules only call ``logging.getLogger(__name__)``; nothing is
configured until the host calls ``setup_hearth_logging``. Log files go to
``<HEARTH_DATA_DIR or ~/.hearth>/logs``:

- ``local-YYYY-MM-DD.log``: the ``hearth`` logger output
- ``engine-events-YYYY-MM-DD.log``: one line per migration, sync or populate
  (written only when the engine runs with ``event_log=True``)
"""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOGGER_NAME = "hearth"


def get_hearth_home() -> Path:
    data_dir = os.environ.get("HEARTH_DATA_DIR")
    if data_dir:
        return Path(data_dir).expanduser()
    return Path.home() / ".hearth"


def get_log_dir() -> Path:
    log_dir = get_hearth_home() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def setup_hearth_logging(database: str = "default", level: str = "INFO") -> logging.Logger:
    """Configure the ``hearth`` logger.

    Args:
        database: Name of the database the process works on (recorded once)
        level: Level name; unknown names fall back to INFO. DEBUG also logs
            to the console.

    Returns:
        The ``hearth`` logger. Calling this again does not add handlers.
    """
    logger = logging.getLogger(LOGGER_NAME)
    resolved = getattr(logging, str(level).upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logger.setLevel(resolved)

    if any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        return logger

    log_file = get_log_dir() / f"local-{datetime.now():%Y-%m-%d}.log"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)

    if resolved == logging.DEBUG:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console)

    logger.debug(f"Logging configured for database={database}")
    return logger


def log_engine_event(event_type: str, details: str, database: str = "default") -> None:
    """Append one line to today's engine event log."""
    event_file = get_log_dir() / f"engine-events-{datetime.now():%Y-%m-%d}.log"
    timestamp = datetime.now().isoformat(timespec="seconds")
    with open(event_file, "a", encoding="utf-8") as f:
        f.write(f"{timestamp} | {event_type} | db={database} | {details}\n")


def log_migration(database: str, ops: int, version: Optional[int] = None) -> None:
    log_engine_event("migration", f"ops={ops}, version={version}", database)


def log_sync(
    database: str,
    pushed: int,
    pulled: int,
    skipped: int = 0,
    error: Optional[str] = None,
) -> None:
    details = f"pushed={pushed}, pulled={pulled}, skipped={skipped}"
    if error:
        details += f", error={error[:200]}"
    log_engine_event("sync", details, database)


def log_populate(database: str, stores: int, rows: int, error: Optional[str] = None) -> None:
    details = f"stores={stores}, rows={rows}"
    if error:
        details += f", error={error[:200]}"
    log_engine_event("populate", details, database)
