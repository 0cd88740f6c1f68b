"""Stable terminal identity, established once per database."""

import hashlib
import logging
import socket
from dataclasses import dataclass

from .cursor import CursorStore
from .store import TerminalStore, now_iso

logger = logging.getLogger(__name__)


@dataclass
class TerminalIdentity:
    """Identity of this POS terminal within a store."""

    id: int
    terminal_code: str
    store_id: int
    device_name: str
    ip_address: str | None = None
    last_sync_at: str | None = None


def terminal_code_for(hostname: str) -> str:
    """Derive the stable terminal code from a host name."""
    return f"TERM-{hostname}"


def terminal_number_for(terminal_code: str) -> int:
    """Relay-wide terminal id derived from the terminal code.

    Every terminal has its own database, so a local autoincrement id would
    be 1 everywhere and break self-exclusion on pull. 48 bits keeps the id
    exact in JSON consumers that use doubles.
    """
    digest = hashlib.sha256(terminal_code.encode("utf-8")).digest()
    return int.from_bytes(digest[:6], "big") or 1


def get_local_ip() -> str:
    """Best guess at this host's outward-facing IPv4 address."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packet is sent; connect() only selects a route.
        sock.connect(("10.255.255.255", 1))
        return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        sock.close()


class IdentityStore:
    """Creates or reuses the terminals row for this host."""

    def __init__(self, store: TerminalStore):
        self.store = store

    def _from_row(self, row) -> TerminalIdentity:
        return TerminalIdentity(
            id=row["id"],
            terminal_code=row["terminal_code"],
            store_id=row["store_id"],
            device_name=row["device_name"],
            ip_address=row["ip_address"],
            last_sync_at=row["last_sync_at"],
        )

    def get_or_create(
        self,
        store_id: int = 1,
        hostname: str | None = None,
    ) -> TerminalIdentity:
        """Get the terminal row, inserting it on first run.

        An existing row wins: its store_id is adopted even if ``store_id``
        differs.

        Args:
            store_id: Store to register a new terminal under.
            hostname: Host name override (defaults to socket.gethostname()).

        Returns:
            The terminal identity.
        """
        hostname = hostname or socket.gethostname()
        code = terminal_code_for(hostname)

        with self.store.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM terminals WHERE terminal_code = ?", (code,)
            ).fetchone()

            if row is None:
                conn.execute(
                    """
                    INSERT INTO terminals (
                        id, terminal_code, store_id, device_name, ip_address, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        terminal_number_for(code),
                        code,
                        store_id,
                        hostname,
                        get_local_ip(),
                        now_iso(),
                    ),
                )
                row = conn.execute(
                    "SELECT * FROM terminals WHERE terminal_code = ?", (code,)
                ).fetchone()
                logger.info(f"Registered new terminal {code} (ID: {row['id']})")
            elif row["store_id"] != store_id:
                logger.info(
                    f"Terminal {code} already registered to store {row['store_id']}, "
                    f"ignoring configured store {store_id}"
                )

            identity = self._from_row(row)
            CursorStore(self.store).get(identity.id)

        logger.info(f"Terminal initialized: {code} (ID: {identity.id})")
        return identity

    def touch_last_sync(self, terminal_id: int) -> None:
        """Record the completion time of a full sync cycle."""
        self.store.conn.execute(
            "UPDATE terminals SET last_sync_at = ? WHERE id = ?",
            (now_iso(), terminal_id),
        )

    def get(self, terminal_id: int) -> TerminalIdentity | None:
        row = self.store.conn.execute(
            "SELECT * FROM terminals WHERE id = ?", (terminal_id,)
        ).fetchone()
        return self._from_row(row) if row else None
