"""Environment-driven configuration.

Variables:
- SQLMEMORY_DB_PATH: database file (":memory:" for a throwaway database)
- SQLMEMORY_DIR: directory holding memory.db and the log file
- SQLMEMORY_LOG_LEVEL: logging level name (default INFO)
"""

import logging
import os
from pathlib import Path

from .constants import (
    DB_FILE_SUFFIX,
    DEFAULT_DATABASES_DIR,
    DEFAULT_DB_NAME,
    IN_MEMORY_DB,
    LOG_FILE_NAME,
)

DB_PATH_ENV = "SQLMEMORY_DB_PATH"
DIR_ENV = "SQLMEMORY_DIR"
LOG_LEVEL_ENV = "SQLMEMORY_LOG_LEVEL"


def get_db_path(explicit: Path | str | None = None) -> Path:
    """Resolve the database file path.

    An explicit path wins, then SQLMEMORY_DB_PATH, then
    SQLMEMORY_DIR/memory.db, then ./databases/memory.db.
    """
    if explicit:
        return Path(explicit)
    if env_path := os.environ.get(DB_PATH_ENV):
        return Path(env_path)
    base = Path(os.environ.get(DIR_ENV, DEFAULT_DATABASES_DIR))
    return base / f"{DEFAULT_DB_NAME}{DB_FILE_SUFFIX}"


def is_in_memory(db_path: Path | str) -> bool:
    return str(db_path) == IN_MEMORY_DB


def get_log_path(db_path: Path | str) -> Path | None:
    """Log file next to the database, or None for an in-memory database."""
    if is_in_memory(db_path):
        return None
    return Path(db_path).parent / LOG_FILE_NAME


def get_log_level() -> int:
    """Log level from SQLMEMORY_LOG_LEVEL; unknown names fall back to INFO."""
    name = os.environ.get(LOG_LEVEL_ENV, "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO
