"""Local SQLite storage shared by the outbox, cursor, identity and replay."""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from ..errors import StorageError

logger = logging.getLogger(__name__)

# SQL schema for the terminal database
SCHEMA = """
-- Terminals: one row per device, created on first run
CREATE TABLE IF NOT EXISTS terminals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    terminal_code TEXT UNIQUE NOT NULL,
    store_id INTEGER NOT NULL,
    device_name TEXT NOT NULL,
    ip_address TEXT,
    last_sync_at TEXT,
    is_active INTEGER DEFAULT 1,
    created_at TEXT NOT NULL
);

-- Sync outbox: append-only record of local mutations awaiting push
CREATE TABLE IF NOT EXISTS sync_outbox (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    action TEXT NOT NULL CHECK(action IN ('create', 'update', 'delete')),
    data TEXT NOT NULL,
    store_id INTEGER NOT NULL,
    terminal_id INTEGER,
    synced INTEGER NOT NULL DEFAULT 0,
    sync_attempts INTEGER NOT NULL DEFAULT 0,
    last_sync_attempt TEXT,
    last_error TEXT,
    rejected INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_outbox_synced ON sync_outbox(synced, rejected, created_at);
CREATE INDEX IF NOT EXISTS idx_sync_outbox_terminal ON sync_outbox(terminal_id);

-- Sync state: pull watermark and push/pull timestamps per terminal
CREATE TABLE IF NOT EXISTS sync_state (
    terminal_id INTEGER PRIMARY KEY,
    last_pull_at TEXT,
    last_push_at TEXT,
    last_sync_version INTEGER NOT NULL DEFAULT 0
);

-- Replay targets
CREATE TABLE IF NOT EXISTS categories (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    store_id INTEGER
);

CREATE TABLE IF NOT EXISTS products (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    sku TEXT,
    barcode TEXT,
    category_id INTEGER,
    price REAL NOT NULL DEFAULT 0,
    cost REAL NOT NULL DEFAULT 0,
    stock_quantity INTEGER NOT NULL DEFAULT 0,
    min_stock_level INTEGER DEFAULT 0,
    description TEXT,
    image_url TEXT,
    is_active INTEGER DEFAULT 1,
    store_id INTEGER
);

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY,
    username TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    full_name TEXT,
    role TEXT,
    is_active INTEGER DEFAULT 1,
    store_id INTEGER
);
"""


def now_iso() -> str:
    """Current local time with fixed-width microseconds, so strings sort."""
    return datetime.now().isoformat(timespec="microseconds")


class TerminalStore:
    """SQLite connection owner for one terminal.

    The connection runs in autocommit mode; multi-statement work goes
    through :meth:`transaction`, which nests via savepoints.
    """

    def __init__(self, db_path: str | Path):
        """Initialize the terminal store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = Path(db_path).expanduser() if db_path != ":memory:" else None
        self._conn: sqlite3.Connection | None = None
        self._savepoint_seq = 0

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self.db_path is not None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(self.db_path)
        else:
            target = ":memory:"

        self._conn = sqlite3.connect(
            target, isolation_level=None, check_same_thread=False, timeout=30
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)

        logger.info(f"TerminalStore connected to {target}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("TerminalStore connection closed")

    @property
    def conn(self) -> sqlite3.Connection:
        """The shared connection, opened on first use."""
        if self._conn is None:
            self.connect()
        return self._conn

    @contextmanager
    def transaction(self, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """Run a block atomically.

        Opens ``BEGIN IMMEDIATE`` at the outermost level and a savepoint when
        already inside a transaction. SQLite failures roll back the block and
        surface as StorageError; other exceptions roll back and propagate.
        """
        conn = self.conn

        if conn.in_transaction:
            self._savepoint_seq += 1
            name = f"sp_{self._savepoint_seq}"
            conn.execute(f"SAVEPOINT {name}")
            try:
                yield conn
            except BaseException:
                conn.execute(f"ROLLBACK TO {name}")
                conn.execute(f"RELEASE {name}")
                raise
            conn.execute(f"RELEASE {name}")
            return

        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        except sqlite3.Error as e:
            raise StorageError(f"Could not begin transaction: {e}") from e

        try:
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(str(e)) from e
        except BaseException:
            conn.rollback()
            raise

        try:
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Commit failed: {e}") from e

    def fetch_row(self, table: str, row_id: int) -> dict[str, Any] | None:
        """Read a replay-target row by primary key."""
        row = self.conn.execute(
            f"SELECT * FROM {table} WHERE id = ?", (row_id,)
        ).fetchone()
        return dict(row) if row else None
