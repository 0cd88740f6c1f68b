"""Append-only, globally version-ordered change log kept by the relay.

Versions come from a single counter in ``sync_metadata`` and are assigned
inside one exclusive write transaction per pushed batch, so a batch always
receives a contiguous, strictly increasing run of versions.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from ..errors import StorageError

logger = logging.getLogger(__name__)

# Schema for the relay change log
CHANGELOG_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_changes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    store_id INTEGER NOT NULL,
    terminal_id INTEGER,
    entity_type TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    action TEXT NOT NULL,
    data TEXT NOT NULL,
    version INTEGER NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_changes_store ON sync_changes(store_id);
CREATE INDEX IF NOT EXISTS idx_sync_changes_version ON sync_changes(version);
CREATE INDEX IF NOT EXISTS idx_sync_changes_created ON sync_changes(created_at);

CREATE TABLE IF NOT EXISTS sync_metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

INSERT OR IGNORE INTO sync_metadata (key, value) VALUES ('latest_version', '0');
"""


@dataclass
class ChangeLogEntry:
    """A single accepted change."""

    id: int
    store_id: int
    terminal_id: int | None
    entity_type: str
    entity_id: int
    action: str
    data: str
    version: int
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "store_id": self.store_id,
            "terminal_id": self.terminal_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "data": self.data,
            "version": self.version,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ChangeLogEntry":
        return cls(
            id=row["id"],
            store_id=row["store_id"],
            terminal_id=row["terminal_id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            action=row["action"],
            data=row["data"],
            version=row["version"],
            created_at=row["created_at"],
        )


class ChangeLog:
    """SQLite-backed relay change log."""

    def __init__(self, db_path: str | Path):
        """Initialize the change log.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = Path(db_path).expanduser() if db_path != ":memory:" else None
        self._conn: sqlite3.Connection | None = None
        # Serializes use of the shared connection across server threads;
        # BEGIN IMMEDIATE serializes writers across processes.
        self._lock = threading.RLock()

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
        self._conn.executescript(CHANGELOG_SCHEMA)

        logger.info(
            f"ChangeLog connected to {target}, latest_version={self.latest_version()}"
        )

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    def _read_version(self, conn: sqlite3.Connection) -> int:
        row = conn.execute(
            "SELECT value FROM sync_metadata WHERE key = 'latest_version'"
        ).fetchone()
        return int(row[0]) if row else 0

    def latest_version(self) -> int:
        """Current global version counter."""
        with self._lock:
            return self._read_version(self._ensure_connected())

    def append_batch(
        self,
        store_id: int,
        terminal_id: int | None,
        changes: list[dict[str, Any]],
    ) -> tuple[int, int]:
        """Append a batch, assigning contiguous versions in array order.

        Args:
            store_id: Store the pushing terminal belongs to.
            terminal_id: Pushing terminal (None for relay-originated changes).
            changes: Validated changes with entity_type, entity_id, action
                and data (JSON string).

        Returns:
            Tuple of (changes appended, latest version after the batch).

        Raises:
            StorageError: If the transaction fails; nothing is written.
        """
        with self._lock:
            conn = self._ensure_connected()
            try:
                conn.execute("BEGIN IMMEDIATE")
                version = self._read_version(conn)
                created_at = datetime.now().isoformat(timespec="microseconds")

                for change in changes:
                    version += 1
                    conn.execute(
                        """
                        INSERT INTO sync_changes (
                            store_id, terminal_id, entity_type, entity_id,
                            action, data, version, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            store_id,
                            terminal_id,
                            change["entity_type"],
                            change["entity_id"],
                            change["action"],
                            change["data"],
                            version,
                            created_at,
                        ),
                    )

                conn.execute(
                    "UPDATE sync_metadata SET value = ? WHERE key = 'latest_version'",
                    (str(version),),
                )
                conn.commit()
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.rollback()
                raise StorageError(f"Failed to append changes: {e}") from e

        logger.debug(
            f"Appended {len(changes)} changes from terminal {terminal_id}, "
            f"latest_version={version}"
        )
        return len(changes), version

    def changes_since(
        self,
        since_version: int,
        exclude_terminal_id: int | None = None,
        limit: int = 1000,
    ) -> tuple[list[ChangeLogEntry], int, bool]:
        """Get changes above a version, oldest first.

        Args:
            since_version: Exclusive lower bound.
            exclude_terminal_id: Terminal whose own changes are left out.
            limit: Page size.

        Returns:
            Tuple of (entries, latest version, whether more entries remain).
        """
        with self._lock:
            conn = self._ensure_connected()
            try:
                conn.execute("BEGIN")
                if exclude_terminal_id is None:
                    cursor = conn.execute(
                        """
                        SELECT * FROM sync_changes
                        WHERE version > ?
                        ORDER BY version ASC
                        LIMIT ?
                        """,
                        (since_version, limit + 1),
                    )
                else:
                    cursor = conn.execute(
                        """
                        SELECT * FROM sync_changes
                        WHERE version > ?
                        AND (terminal_id IS NULL OR terminal_id != ?)
                        ORDER BY version ASC
                        LIMIT ?
                        """,
                        (since_version, exclude_terminal_id, limit + 1),
                    )
                rows = cursor.fetchall()
                latest = self._read_version(conn)
                conn.commit()
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.rollback()
                raise StorageError(f"Failed to read changes: {e}") from e

        has_more = len(rows) > limit
        entries = [ChangeLogEntry.from_row(row) for row in rows[:limit]]
        return entries, latest, has_more

    def get_stats(self) -> dict[str, Any]:
        """Get change log statistics.

        Returns:
            Dictionary with totals, today's count and per-terminal counts.
        """
        with self._lock:
            conn = self._ensure_connected()

            stats: dict[str, Any] = {"latest_version": self._read_version(conn)}

            cursor = conn.execute("SELECT COUNT(*) FROM sync_changes")
            stats["total_changes"] = cursor.fetchone()[0]

            today = datetime.now().date().isoformat()
            cursor = conn.execute(
                "SELECT COUNT(*) FROM sync_changes WHERE substr(created_at, 1, 10) = ?",
                (today,),
            )
            stats["changes_today"] = cursor.fetchone()[0]

            cursor = conn.execute(
                "SELECT terminal_id, COUNT(*) FROM sync_changes GROUP BY terminal_id"
            )
            stats["changes_by_terminal"] = {
                str(row[0]): row[1] for row in cursor
            }

            if self.db_path is not None and self.db_path.exists():
                stats["db_size_mb"] = round(
                    self.db_path.stat().st_size / (1024 * 1024), 2
                )

        return stats

    def recent_activity(self, limit: int = 50) -> list[ChangeLogEntry]:
        """Most recent changes, newest first."""
        with self._lock:
            cursor = self._ensure_connected().execute(
                "SELECT * FROM sync_changes ORDER BY version DESC LIMIT ?",
                (limit,),
            )
            return [ChangeLogEntry.from_row(row) for row in cursor]
