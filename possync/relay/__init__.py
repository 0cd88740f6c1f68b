"""Central relay: append-only change log served over HTTP."""

from .app import create_app
from .changelog import ChangeLog, ChangeLogEntry
from .service import RelaySyncService

__all__ = ["ChangeLog", "ChangeLogEntry", "RelaySyncService", "create_app"]
