"""Durable outbox of local mutations awaiting push to the relay.

Entries are appended when a local mutation commits and are never deleted;
the sync client only flips ``synced``, records failed attempts, or parks
entries the relay refused as ``rejected``.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from ..errors import StorageError
from .store import TerminalStore, now_iso

logger = logging.getLogger(__name__)

ACTIONS = ("create", "update", "delete")


@dataclass
class OutboxEntry:
    """A single queued local mutation."""

    id: int
    entity_type: str
    entity_id: int
    action: str  # "create", "update", "delete"
    data: str  # JSON snapshot of the entity
    store_id: int
    terminal_id: int | None
    created_at: str
    synced: bool = False
    sync_attempts: int = 0
    last_sync_attempt: str | None = None
    last_error: str | None = None
    rejected: bool = False  # Refused by the relay; not pushed again

    @property
    def payload(self) -> Any:
        """Decoded entity snapshot."""
        return json.loads(self.data)

    def to_change(self) -> dict[str, Any]:
        """Serialize for the relay push body."""
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "data": self.data,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "OutboxEntry":
        """Create from a sync_outbox row."""
        return cls(
            id=row["id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            action=row["action"],
            data=row["data"],
            store_id=row["store_id"],
            terminal_id=row["terminal_id"],
            created_at=row["created_at"],
            synced=bool(row["synced"]),
            sync_attempts=row["sync_attempts"],
            last_sync_attempt=row["last_sync_attempt"],
            last_error=row["last_error"],
            rejected=bool(row["rejected"]),
        )


def _check_fields(entity_type: Any, entity_id: Any, action: Any, data: str) -> int:
    """Apply the relay's push rules up front and return the parsed entity id.

    Raises:
        ValueError: If the relay would refuse this change.
    """
    if action not in ACTIONS:
        raise ValueError(f"Unknown action {action!r}")
    if not isinstance(entity_type, str) or not entity_type:
        raise ValueError(f"entity_type must be a non-empty string, got {entity_type!r}")
    if entity_id is None or isinstance(entity_id, bool):
        raise ValueError("entity_id required")
    try:
        parsed = int(entity_id)
    except (TypeError, ValueError):
        raise ValueError(f"entity_id must be an integer, got {entity_id!r}") from None
    if parsed <= 0:
        raise ValueError(f"entity_id must be positive, got {parsed}")
    if not data:
        raise ValueError("data required")
    return parsed


class Outbox:
    """Queue of not-yet-acknowledged local mutations."""

    def __init__(
        self,
        store: TerminalStore,
        store_id: int = 1,
        terminal_id: int | None = None,
    ):
        """Initialize the outbox.

        Args:
            store: Terminal store owning the connection.
            store_id: Store this terminal belongs to.
            terminal_id: Terminal row id, set once identity is known.
        """
        self.store = store
        self.store_id = store_id
        self.terminal_id = terminal_id

    def bind(self, terminal_id: int, store_id: int) -> None:
        """Attach the terminal identity stamped onto new entries."""
        self.terminal_id = terminal_id
        self.store_id = store_id

    def _insert(
        self,
        entity_type: str,
        entity_id: int,
        action: str,
        payload: Any,
    ) -> OutboxEntry:
        if payload is None:
            data = ""
        elif isinstance(payload, str):
            data = payload
        else:
            data = json.dumps(payload, default=str)
        entity_id = _check_fields(entity_type, entity_id, action, data)
        created_at = now_iso()

        cursor = self.store.conn.execute(
            """
            INSERT INTO sync_outbox (
                entity_type, entity_id, action, data, store_id, terminal_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entity_type,
                entity_id,
                action,
                data,
                self.store_id,
                self.terminal_id,
                created_at,
            ),
        )

        return OutboxEntry(
            id=cursor.lastrowid,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            data=data,
            store_id=self.store_id,
            terminal_id=self.terminal_id,
            created_at=created_at,
        )

    def record_mutation(
        self,
        entity_type: str,
        entity_id: int,
        action: str,
        snapshot: Any,
    ) -> OutboxEntry:
        """Queue a mutation as part of the caller's transaction.

        Call this from inside ``TerminalStore.transaction()`` alongside the
        business write so both commit or neither does.

        Raises:
            ValueError: If the change would be refused by the relay: unknown
                action, empty entity type, non-positive entity id or no data.
            StorageError: If the insert fails.
        """
        try:
            entry = self._insert(entity_type, entity_id, action, snapshot)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to record {entity_type}:{entity_id}: {e}") from e

        logger.debug(f"Queued {action} {entity_type}:{entity_id} as outbox #{entry.id}")
        return entry

    def enqueue(
        self,
        entity_type: str,
        entity_id: int,
        action: str,
        payload: Any,
    ) -> OutboxEntry | None:
        """Best-effort append; never fails the calling mutation.

        Returns:
            The created entry, or None if it could not be stored.
        """
        try:
            return self.record_mutation(entity_type, entity_id, action, payload)
        except (StorageError, ValueError, TypeError) as e:
            logger.error(f"Add to outbox failed for {entity_type}:{entity_id}: {e}")
            return None

    def get_pending(self, limit: int = 100) -> list[OutboxEntry]:
        """Get entries that haven't been synced yet, skipping rejected ones.

        Args:
            limit: Maximum entries to return.

        Returns:
            List of pending entries, oldest first.
        """
        cursor = self.store.conn.execute(
            """
            SELECT * FROM sync_outbox
            WHERE synced = 0 AND rejected = 0
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (limit,),
        )
        return [OutboxEntry.from_row(row) for row in cursor]

    def mark_synced(self, entry_ids: list[int]) -> int:
        """Mark a pushed batch as synced in one statement.

        Args:
            entry_ids: IDs of every entry in the confirmed batch.

        Returns:
            Number of entries updated.
        """
        if not entry_ids:
            return 0

        placeholders = ",".join("?" * len(entry_ids))
        with self.store.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE sync_outbox
                SET synced = 1
                WHERE id IN ({placeholders}) AND synced = 0
                """,
                tuple(entry_ids),
            )

        count = cursor.rowcount
        logger.debug(f"Marked {count} outbox entries as synced")
        return count

    def record_failure(self, entry_ids: list[int], error: str | None = None) -> int:
        """Record a failed push attempt on every entry of a batch.

        Returns:
            Number of entries updated.
        """
        if not entry_ids:
            return 0

        placeholders = ",".join("?" * len(entry_ids))
        with self.store.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE sync_outbox
                SET sync_attempts = sync_attempts + 1,
                    last_sync_attempt = ?,
                    last_error = ?
                WHERE id IN ({placeholders})
                """,
                (now_iso(), error, *entry_ids),
            )

        return cursor.rowcount

    def mark_rejected(self, entry_ids: list[int], error: str | None = None) -> int:
        """Park entries the relay refused so they stop heading the queue.

        Rejected entries stay unsynced and count as a failed attempt, but
        ``get_pending`` no longer returns them.

        Returns:
            Number of entries updated.
        """
        if not entry_ids:
            return 0

        placeholders = ",".join("?" * len(entry_ids))
        with self.store.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE sync_outbox
                SET rejected = 1,
                    sync_attempts = sync_attempts + 1,
                    last_sync_attempt = ?,
                    last_error = ?
                WHERE id IN ({placeholders}) AND synced = 0
                """,
                (now_iso(), error, *entry_ids),
            )

        logger.warning(f"Parked {cursor.rowcount} rejected outbox entries")
        return cursor.rowcount

    def get_rejected(self, limit: int = 100) -> list[OutboxEntry]:
        """Entries the relay refused, oldest first."""
        cursor = self.store.conn.execute(
            """
            SELECT * FROM sync_outbox
            WHERE synced = 0 AND rejected = 1
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (limit,),
        )
        return [OutboxEntry.from_row(row) for row in cursor]

    def count_rejected(self) -> int:
        row = self.store.conn.execute(
            "SELECT COUNT(*) FROM sync_outbox WHERE synced = 0 AND rejected = 1"
        ).fetchone()
        return row[0]

    def get_stuck(self, threshold: int, limit: int = 100) -> list[OutboxEntry]:
        """Pending entries that have failed at least ``threshold`` times."""
        cursor = self.store.conn.execute(
            """
            SELECT * FROM sync_outbox
            WHERE synced = 0 AND sync_attempts >= ?
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (threshold, limit),
        )
        return [OutboxEntry.from_row(row) for row in cursor]

    def get(self, entry_id: int) -> OutboxEntry | None:
        row = self.store.conn.execute(
            "SELECT * FROM sync_outbox WHERE id = ?", (entry_id,)
        ).fetchone()
        return OutboxEntry.from_row(row) if row else None

    def get_stats(self, stuck_threshold: int | None = None) -> dict[str, Any]:
        """Get outbox statistics.

        Returns:
            Dictionary with entry counts and the oldest pending timestamp.
        """
        conn = self.store.conn

        stats: dict[str, Any] = {}

        cursor = conn.execute("SELECT COUNT(*) FROM sync_outbox")
        stats["total_entries"] = cursor.fetchone()[0]

        cursor = conn.execute(
            "SELECT COUNT(*), MIN(created_at) FROM sync_outbox WHERE synced = 0"
        )
        row = cursor.fetchone()
        stats["pending_entries"] = row[0]
        stats["oldest_pending_at"] = row[1]
        stats["synced_entries"] = stats["total_entries"] - stats["pending_entries"]
        stats["rejected_entries"] = self.count_rejected()

        cursor = conn.execute(
            "SELECT entity_type, COUNT(*) FROM sync_outbox GROUP BY entity_type"
        )
        stats["entries_by_type"] = {row[0]: row[1] for row in cursor}

        if stuck_threshold is not None:
            cursor = conn.execute(
                "SELECT COUNT(*) FROM sync_outbox WHERE synced = 0 AND sync_attempts >= ?",
                (stuck_threshold,),
            )
            stats["stuck_entries"] = cursor.fetchone()[0]

        return stats
