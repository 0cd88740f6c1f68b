"""Per-terminal sync watermark."""

import logging
from dataclasses import dataclass

from .store import TerminalStore, now_iso

logger = logging.getLogger(__name__)


@dataclass
class SyncCursor:
    """Last applied relay version and last push/pull times for a terminal."""

    terminal_id: int
    last_sync_version: int = 0
    last_pull_at: str | None = None
    last_push_at: str | None = None


class CursorStore:
    """Reads and writes the sync_state row of each terminal."""

    def __init__(self, store: TerminalStore):
        self.store = store

    def get(self, terminal_id: int) -> SyncCursor:
        """Get the cursor, creating a zeroed row if none exists."""
        conn = self.store.conn
        row = conn.execute(
            "SELECT * FROM sync_state WHERE terminal_id = ?", (terminal_id,)
        ).fetchone()

        if row is None:
            conn.execute(
                "INSERT OR IGNORE INTO sync_state (terminal_id, last_sync_version) VALUES (?, 0)",
                (terminal_id,),
            )
            return SyncCursor(terminal_id=terminal_id)

        return SyncCursor(
            terminal_id=row["terminal_id"],
            last_sync_version=row["last_sync_version"],
            last_pull_at=row["last_pull_at"],
            last_push_at=row["last_push_at"],
        )

    def mark_pushed(self, terminal_id: int) -> None:
        self.get(terminal_id)
        self.store.conn.execute(
            "UPDATE sync_state SET last_push_at = ? WHERE terminal_id = ?",
            (now_iso(), terminal_id),
        )

    def advance(self, terminal_id: int, version: int) -> None:
        """Set the pull watermark and last_pull_at.

        Runs on the shared connection, so it joins an open replay
        transaction when there is one.
        """
        self.get(terminal_id)
        self.store.conn.execute(
            """
            UPDATE sync_state
            SET last_sync_version = ?, last_pull_at = ?
            WHERE terminal_id = ?
            """,
            (version, now_iso(), terminal_id),
        )
        logger.debug(f"Cursor for terminal {terminal_id} advanced to {version}")
