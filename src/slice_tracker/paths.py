"""Locations of the slices database and the monitor log."""

from __future__ import annotations

from pathlib import Path

from platformdirs import PlatformDirs


APP_NAME = "SliceTracker"
APP_AUTHOR = "SliceTracker"

DB_FILENAME = "slices.sqlite3"
LOG_FILENAME = "monitor.log"


def _dirs() -> PlatformDirs:
    return PlatformDirs(appname=APP_NAME, appauthor=APP_AUTHOR, roaming=True)


def get_data_dir() -> Path:
    """Directory of the database shared by the CLI, the dashboard and the monitor."""
    return _ensure(Path(_dirs().user_data_path))


def get_log_dir() -> Path:
    return _ensure(Path(_dirs().user_log_path))


def get_db_path() -> Path:
    return get_data_dir() / DB_FILENAME


def get_log_path() -> Path:
    """File the foreground ``monitor`` command appends heartbeat and away events to."""
    return get_log_dir() / LOG_FILENAME


def _ensure(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path
