"""SQLite store adapter for time slices, settings and the liveness heartbeat."""

from __future__ import annotations

import functools
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, Protocol, TypeVar

from .errors import PersistenceError, SliceNotFoundError
from .models import SyncSnapshot, TimeSlice

logger = logging.getLogger(__name__)

DATETIME_FMT = "%Y-%m-%d %H:%M:%S.%f"

_UNSET = object()

_SLICE_COLUMNS = """
    id,
    work_item_id,
    start_time,
    end_time,
    notes,
    synced,
    remote_id,
    synced_start_time,
    synced_end_time
"""


def open_database(
    path: Path | str, *, check_same_thread: bool = True, timeout: float = 30.0
) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
        timeout=timeout,
    )
    conn.row_factory = sqlite3.Row
    enable_foreign_keys(conn)
    initialize_schema(conn)
    return conn


def enable_foreign_keys(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON;")


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS time_slices (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            work_item_id INTEGER NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT,
            notes TEXT NOT NULL DEFAULT '',
            synced INTEGER NOT NULL DEFAULT 0,
            remote_id TEXT,
            synced_start_time TEXT,
            synced_end_time TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_slices_start_time
            ON time_slices(start_time);

        CREATE INDEX IF NOT EXISTS idx_slices_work_item
            ON time_slices(work_item_id);

        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS heartbeats (
            name TEXT PRIMARY KEY,
            beat_time TEXT NOT NULL
        );
        """
    )


def format_instant(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(DATETIME_FMT) if value is not None else None


def parse_instant(value: Optional[str]) -> Optional[datetime]:
    return datetime.strptime(value, DATETIME_FMT) if value else None


class SliceStore(Protocol):
    """Contract the engine relies on; any implementation must be row-atomic."""

    def insert_slice(self, time_slice: TimeSlice) -> int: ...

    def update_slice(self, slice_id: int, **fields: object) -> None: ...

    def delete_slice(self, slice_id: int) -> None: ...

    def delete_slices(self, slice_ids: Iterable[int]) -> None: ...

    def get_slice(self, slice_id: int) -> TimeSlice: ...

    def get_slices(self, slice_ids: Iterable[int]) -> list[TimeSlice]: ...

    def find_open_slices(self) -> list[TimeSlice]: ...

    def find_slices_in_range(self, start: datetime, end: datetime) -> list[TimeSlice]: ...

    def find_slices_for_work_item(self, work_item_id: int) -> list[TimeSlice]: ...

    def transaction(self): ...

    def call_after_commit(self, callback: Callable[[], None]) -> None: ...


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        logger.error("Store call failed while trying to %s: %s", action, exc)
        raise PersistenceError(f"Could not {action}.") from exc


_F = TypeVar("_F", bound=Callable[..., object])


def _synchronized(method: _F) -> _F:
    @functools.wraps(method)
    def wrapper(self: "SqliteSliceStore", *args: object, **kwargs: object) -> object:
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


class SqliteSliceStore:
    """Store adapter backed by a single SQLite connection.

    Every write is a single statement; multi-row operations are grouped by the
    caller with :meth:`transaction`. The connection may be shared between
    threads; calls and whole transactions are serialized by a re-entrant lock.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.RLock()
        self._after_commit: list[Callable[[], None]] = []

    @classmethod
    def open(cls, path: Path | str, *, check_same_thread: bool = True) -> "SqliteSliceStore":
        with _translate_errors("open the database"):
            conn = open_database(path, check_same_thread=check_same_thread)
        return cls(conn)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group writes atomically; nested calls join the outer transaction."""
        with self._lock:
            if self._conn.in_transaction:
                yield
                return
            with _translate_errors("start a transaction"):
                self._conn.execute("BEGIN IMMEDIATE")
            self._after_commit = []
            try:
                yield
            except BaseException:
                self._after_commit = []
                self._conn.rollback()
                raise
            with _translate_errors("commit the transaction"):
                self._conn.commit()
            callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            callback()

    def call_after_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once the outermost transaction commits, or now if none is open.

        Callbacks queued by a transaction that rolls back are dropped.
        """
        with self._lock:
            if self._conn.in_transaction:
                if callback not in self._after_commit:
                    self._after_commit.append(callback)
                return
        callback()

    @_synchronized
    def insert_slice(self, time_slice: TimeSlice) -> int:
        with _translate_errors("insert a time slice"):
            cur = self._conn.execute(
                """
                INSERT INTO time_slices (
                    work_item_id,
                    start_time,
                    end_time,
                    notes,
                    synced,
                    remote_id,
                    synced_start_time,
                    synced_end_time
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    time_slice.work_item_id,
                    format_instant(time_slice.start_time),
                    format_instant(time_slice.end_time),
                    time_slice.notes or "",
                    1 if time_slice.sync.synced else 0,
                    time_slice.sync.remote_id,
                    format_instant(time_slice.sync.synced_start),
                    format_instant(time_slice.sync.synced_end),
                ),
            )
        slice_id = int(cur.lastrowid)
        logger.debug("Inserted slice %d for work item %d", slice_id, time_slice.work_item_id)
        return slice_id

    @_synchronized
    def update_slice(
        self,
        slice_id: int,
        *,
        work_item_id: Optional[int] = None,
        start_time: Optional[datetime] = None,
        end_time: object = _UNSET,
        notes: Optional[str] = None,
        sync: Optional[SyncSnapshot] = None,
    ) -> None:
        """Update a single slice record; only the provided fields change."""
        fields: list[str] = []
        params: list[object] = []

        if work_item_id is not None:
            fields.append("work_item_id = ?")
            params.append(work_item_id)
        if start_time is not None:
            fields.append("start_time = ?")
            params.append(format_instant(start_time))
        if end_time is not _UNSET:
            fields.append("end_time = ?")
            params.append(format_instant(end_time))  # type: ignore[arg-type]
        if notes is not None:
            fields.append("notes = ?")
            params.append(notes)
        if sync is not None:
            fields.extend(
                [
                    "synced = ?",
                    "remote_id = ?",
                    "synced_start_time = ?",
                    "synced_end_time = ?",
                ]
            )
            params.extend(
                [
                    1 if sync.synced else 0,
                    sync.remote_id,
                    format_instant(sync.synced_start),
                    format_instant(sync.synced_end),
                ]
            )

        if not fields:
            return

        params.append(slice_id)
        with _translate_errors("update a time slice"):
            cur = self._conn.execute(
                f"UPDATE time_slices SET {', '.join(fields)} WHERE id = ?",
                params,
            )
        if cur.rowcount == 0:
            raise SliceNotFoundError(slice_id)

    @_synchronized
    def delete_slice(self, slice_id: int) -> None:
        with _translate_errors("delete a time slice"):
            cur = self._conn.execute("DELETE FROM time_slices WHERE id = ?", (slice_id,))
        if cur.rowcount == 0:
            raise SliceNotFoundError(slice_id)

    @_synchronized
    def delete_slices(self, slice_ids: Iterable[int]) -> None:
        ids = list(slice_ids)
        if not ids:
            return
        placeholders = ", ".join("?" for _ in ids)
        with _translate_errors("delete time slices"):
            self._conn.execute(
                f"DELETE FROM time_slices WHERE id IN ({placeholders})", ids
            )

    @_synchronized
    def get_slice(self, slice_id: int) -> TimeSlice:
        with _translate_errors("read a time slice"):
            row = self._conn.execute(
                f"SELECT {_SLICE_COLUMNS} FROM time_slices WHERE id = ?", (slice_id,)
            ).fetchone()
        if row is None:
            raise SliceNotFoundError(slice_id)
        return _row_to_slice(row)

    @_synchronized
    def get_slices(self, slice_ids: Iterable[int]) -> list[TimeSlice]:
        ids = list(slice_ids)
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with _translate_errors("read time slices"):
            rows = self._conn.execute(
                f"""
                SELECT {_SLICE_COLUMNS}
                FROM time_slices
                WHERE id IN ({placeholders})
                ORDER BY start_time, id
                """,
                ids,
            ).fetchall()
        return [_row_to_slice(row) for row in rows]

    @_synchronized
    def find_open_slices(self) -> list[TimeSlice]:
        with _translate_errors("query open time slices"):
            rows = self._conn.execute(
                f"""
                SELECT {_SLICE_COLUMNS}
                FROM time_slices
                WHERE end_time IS NULL
                ORDER BY id
                """
            ).fetchall()
        return [_row_to_slice(row) for row in rows]

    @_synchronized
    def find_slices_in_range(self, start: datetime, end: datetime) -> list[TimeSlice]:
        """Return slices overlapping ``[start, end)``; open slices count as ongoing."""
        with _translate_errors("query time slices"):
            rows = self._conn.execute(
                f"""
                SELECT {_SLICE_COLUMNS}
                FROM time_slices
                WHERE start_time < ? AND (end_time IS NULL OR end_time > ?)
                ORDER BY start_time, id
                """,
                (format_instant(end), format_instant(start)),
            ).fetchall()
        return [_row_to_slice(row) for row in rows]

    @_synchronized
    def find_slices_for_work_item(self, work_item_id: int) -> list[TimeSlice]:
        with _translate_errors("query time slices"):
            rows = self._conn.execute(
                f"""
                SELECT {_SLICE_COLUMNS}
                FROM time_slices
                WHERE work_item_id = ?
                ORDER BY start_time, id
                """,
                (work_item_id,),
            ).fetchall()
        return [_row_to_slice(row) for row in rows]

    @_synchronized
    def load_settings(self) -> dict[str, str]:
        with _translate_errors("read settings"):
            rows = self._conn.execute("SELECT key, value FROM settings").fetchall()
        return {row["key"]: row["value"] for row in rows}

    @_synchronized
    def save_setting(self, key: str, value: str) -> None:
        with _translate_errors("save a setting"):
            self._conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                (key, value),
            )

    @_synchronized
    def write_heartbeat(self, instant: datetime, name: str = "monitor") -> None:
        with _translate_errors("write the heartbeat"):
            self._conn.execute(
                "INSERT OR REPLACE INTO heartbeats (name, beat_time) VALUES (?, ?)",
                (name, format_instant(instant)),
            )

    @_synchronized
    def read_heartbeat(self, name: str = "monitor") -> Optional[datetime]:
        with _translate_errors("read the heartbeat"):
            row = self._conn.execute(
                "SELECT beat_time FROM heartbeats WHERE name = ?", (name,)
            ).fetchone()
        return parse_instant(row["beat_time"]) if row else None

    @_synchronized
    def data_version(self) -> int:
        """SQLite's per-connection counter of commits made by other connections."""
        with _translate_errors("read the data version"):
            row = self._conn.execute("PRAGMA data_version").fetchone()
        return int(row[0])


def _row_to_slice(row: sqlite3.Row) -> TimeSlice:
    start = parse_instant(row["start_time"])
    assert start is not None
    return TimeSlice(
        id=row["id"],
        work_item_id=row["work_item_id"],
        start_time=start,
        end_time=parse_instant(row["end_time"]),
        notes=row["notes"] or "",
        sync=SyncSnapshot(
            synced=bool(row["synced"]),
            remote_id=row["remote_id"],
            synced_start=parse_instant(row["synced_start_time"]),
            synced_end=parse_instant(row["synced_end_time"]),
        ),
    )
