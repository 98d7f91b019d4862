"""SQLite connection and transaction management."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Iterable, Sequence

from ..errors import StorageError
from ..logging_conf import get_logger

SCHEMA = """
CREATE TABLE IF NOT EXISTS collections (
    collection_id INTEGER PRIMARY KEY AUTOINCREMENT,
    batch_size INTEGER NOT NULL,
    source_url TEXT NOT NULL,
    total_records INTEGER,
    is_complete INTEGER NOT NULL DEFAULT 0,
    started_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS pages (
    page_id INTEGER PRIMARY KEY AUTOINCREMENT,
    collection_id INTEGER NOT NULL REFERENCES collections(collection_id),
    page_number INTEGER NOT NULL,
    search_url TEXT NOT NULL,
    progress TEXT NOT NULL DEFAULT 'pending',
    is_complete INTEGER NOT NULL DEFAULT 0,
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_attempt_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (collection_id, page_number)
);

CREATE INDEX IF NOT EXISTS idx_pages_progress
    ON pages (progress, collection_id, page_number);

CREATE TABLE IF NOT EXISTS records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    record_id INTEGER NOT NULL,
    collection_id INTEGER NOT NULL,
    page_number INTEGER NOT NULL,
    search_url TEXT NOT NULL,
    payload TEXT NOT NULL,
    fetched_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_records_record_id ON records (record_id);

CREATE TABLE IF NOT EXISTS seen_records (
    record_id INTEGER PRIMARY KEY,
    seen_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS duplicates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    record_id INTEGER NOT NULL,
    collection_id INTEGER NOT NULL,
    page_number INTEGER NOT NULL,
    payload TEXT NOT NULL,
    occurrences INTEGER NOT NULL DEFAULT 1,
    first_seen_at TEXT NOT NULL,
    last_seen_at TEXT NOT NULL,
    UNIQUE (record_id, collection_id, page_number)
);
"""


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class Transaction:
    """One connection holding one transaction.

    Use as a context manager: anything not explicitly committed is rolled
    back on exit, whatever the exit path.
    """

    def __init__(self, manager: "SQLiteManager", conn: sqlite3.Connection, immediate: bool) -> None:
        self._manager = manager
        self._conn = conn
        self.state = "open"
        self._run("BEGIN IMMEDIATE" if immediate else "BEGIN")

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if self.state == "open":
                self.rollback()
        finally:
            self._conn.close()

    @property
    def active(self) -> bool:
        return self.state == "open"

    def execute(self, sql: str, params: Sequence[Any] | dict[str, Any] = ()) -> sqlite3.Cursor:
        self._ensure_open()
        return self._run(sql, params)

    def executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> sqlite3.Cursor:
        self._ensure_open()
        try:
            return self._conn.executemany(sql, rows)
        except sqlite3.Error as exc:
            raise StorageError(f"{exc}") from exc

    def commit(self) -> None:
        self._ensure_open()
        self._run("COMMIT")
        self.state = "committed"
        self._manager._record("committed")

    def rollback(self) -> None:
        if self.state != "open":
            return
        self.state = "rolled_back"
        self._manager._record("rolled_back")
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            # nothing left to undo when BEGIN itself failed
            self._manager.logger.debug("rollback_failed", error=str(exc))

    def _ensure_open(self) -> None:
        if self.state != "open":
            raise StorageError(f"Transaction already {self.state}")

    def _run(self, sql: str, params: Sequence[Any] | dict[str, Any] = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise StorageError(f"{exc}") from exc


class SQLiteManager:
    """Open per-transaction connections to one database file with the schema applied."""

    def __init__(self, path: Path, busy_timeout: float = 30.0) -> None:
        self.path = Path(path)
        self.busy_timeout = busy_timeout
        self.logger = get_logger("storage")
        self._lock = Lock()
        self.stats = {"opened": 0, "committed": 0, "rolled_back": 0}
        self.ensure_schema()

    def connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                self.path,
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open database {self.path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def ensure_schema(self) -> None:
        conn = self.connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot initialise schema: {exc}") from exc
        finally:
            conn.close()

    def begin(self, immediate: bool = True) -> Transaction:
        """Start a transaction; ``immediate`` takes the write lock up front."""

        conn = self.connect()
        try:
            tx = Transaction(self, conn, immediate)
        except StorageError:
            conn.close()
            raise
        self._record("opened")
        return tx

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        """Run a read-only statement outside an explicit transaction."""

        conn = self.connect()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"{exc}") from exc
        finally:
            conn.close()

    def reset(self) -> None:
        for suffix in ("", "-wal", "-shm"):
            candidate = self.path.with_name(self.path.name + suffix)
            if candidate.exists():
                candidate.unlink()
        self.ensure_schema()

    def _record(self, event: str) -> None:
        with self._lock:
            self.stats[event] += 1


__all__ = ["SCHEMA", "SQLiteManager", "Transaction", "utcnow_iso"]
