"""Terminal-side sync core.

Provides the durable outbox of local mutations, the pull cursor, terminal
identity, replay of remote changes and the push/pull sync client.
"""

from .apply import ApplierRegistry, ApplyReport, RemoteChange, apply_batch
from .client import SyncClient, SyncResult, SyncState, SyncStatus
from .cursor import CursorStore, SyncCursor
from .identity import IdentityStore, TerminalIdentity
from .outbox import Outbox, OutboxEntry
from .store import TerminalStore

__all__ = [
    "ApplierRegistry",
    "ApplyReport",
    "CursorStore",
    "IdentityStore",
    "Outbox",
    "OutboxEntry",
    "RemoteChange",
    "SyncClient",
    "SyncCursor",
    "SyncResult",
    "SyncState",
    "SyncStatus",
    "TerminalIdentity",
    "TerminalStore",
    "apply_batch",
]
