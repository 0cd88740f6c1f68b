"""Error taxonomy for the sync core.

All of these are caught at the sync cycle boundary; POS operations never
see them.
"""


class SyncError(Exception):
    """Base class for sync failures."""


class NetworkError(SyncError):
    """Relay unreachable, timed out, or failed with a server error.

    Retried on the next cycle; no data is lost.
    """


class InvalidRequest(SyncError):
    """Malformed push or pull request.

    Will never succeed as-is, so it needs operator attention.
    """


class ApplyError(SyncError):
    """A single remote change could not be replayed locally."""

    def __init__(self, message: str, version: int | None = None):
        super().__init__(message)
        self.version = version


class StorageError(SyncError):
    """A local SQLite transaction failed; the whole operation is rolled back."""
