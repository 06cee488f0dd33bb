"""SQLite storage layer for amptop.

The battery log is append-only. Every operation opens its own short-lived
connection, so the collector never holds the database across its sleep and
readers in other processes rely only on SQLite's file locking.
"""

import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import structlog

from amptop.telemetry import BatterySnapshot, BatteryStatus

log = structlog.get_logger()

SCHEMA_VERSION = 1

# Seconds a connection waits on a lock held by another process
BUSY_TIMEOUT = 5.0

SCHEMA = """
CREATE TABLE IF NOT EXISTS daemon_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS battery_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    percent REAL NOT NULL,
    timestamp INTEGER NOT NULL,
    status TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_battery_logs_timestamp
    ON battery_logs(timestamp);
"""


class StorageError(Exception):
    """Raised when the battery log cannot be opened, written or queried."""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Get a database connection that waits on locks held by other processes."""
    return sqlite3.connect(db_path, timeout=BUSY_TIMEOUT)


@contextmanager
def _connect(db_path: Path, action: str) -> Generator[sqlite3.Connection, None, None]:
    """Open a connection for one operation, wrapping sqlite errors in StorageError."""
    try:
        conn = get_connection(db_path)
    except sqlite3.Error as e:
        raise StorageError(f"Failed to open {db_path}: {e}") from e
    try:
        yield conn
    except sqlite3.Error as e:
        raise StorageError(f"Failed to {action}: {e}") from e
    finally:
        conn.close()


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Get current schema version from database."""
    try:
        row = conn.execute("SELECT value FROM daemon_state WHERE key = 'schema_version'").fetchone()
        return int(row[0]) if row else 0
    except sqlite3.OperationalError:
        return 0


def _row_to_snapshot(row: tuple) -> BatterySnapshot:
    return BatterySnapshot(percent=row[0], timestamp=row[1], status=BatteryStatus(row[2]))


class BatteryLog:
    """Append-only battery snapshot log backed by one SQLite file."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    @property
    def exists(self) -> bool:
        """Return True if the database file has been created."""
        return self.db_path.exists()

    def init(self) -> None:
        """Create the table and timestamp index if missing. Safe to call on every start.

        A database written by a different schema version is left untouched
        and only logged, so no history is ever dropped.
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create {self.db_path.parent}: {e}") from e

        with _connect(self.db_path, "create schema") as conn:
            # WAL mode lets viewers read while the daemon writes
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.executescript(SCHEMA)

            existing = get_schema_version(conn)
            if existing == 0:
                conn.execute(
                    "INSERT OR REPLACE INTO daemon_state (key, value, updated_at) "
                    "VALUES (?, ?, ?)",
                    ("schema_version", str(SCHEMA_VERSION), time.time()),
                )
                conn.commit()
                log.info("database_initialized", path=str(self.db_path), version=SCHEMA_VERSION)
            elif existing != SCHEMA_VERSION:
                log.warning("schema_mismatch", existing=existing, expected=SCHEMA_VERSION)

    def append(self, snapshot: BatterySnapshot) -> int:
        """Insert one snapshot. Returns its row id."""
        with _connect(self.db_path, "insert snapshot") as conn:
            cursor = conn.execute(
                "INSERT INTO battery_logs (percent, timestamp, status) VALUES (?, ?, ?)",
                (snapshot.percent, snapshot.timestamp, snapshot.status.value),
            )
            conn.commit()
            row_id = cursor.lastrowid
        assert row_id is not None
        return row_id

    def query(self, limit: int | None = None, *, since: int | None = None) -> list[BatterySnapshot]:
        """Return snapshots newest first.

        Args:
            limit: Return at most this many of the newest rows (None = all)
            since: Only rows with timestamp >= since

        Raises:
            StorageError: If the database is missing or the query fails
            ValueError: If limit is negative
        """
        if limit is not None and limit < 0:
            raise ValueError(f"limit must be >= 0, got {limit}")
        if not self.exists:
            raise StorageError(f"Database not found: {self.db_path}")

        sql = "SELECT percent, timestamp, status FROM battery_logs"
        params: list = []
        if since is not None:
            sql += " WHERE timestamp >= ?"
            params.append(since)
        sql += " ORDER BY timestamp DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with _connect(self.db_path, "query snapshots") as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_snapshot(r) for r in rows]

    def count(self) -> int:
        """Return the number of stored snapshots."""
        if not self.exists:
            return 0
        with _connect(self.db_path, "count snapshots") as conn:
            row = conn.execute("SELECT COUNT(*) FROM battery_logs").fetchone()
        return row[0]
