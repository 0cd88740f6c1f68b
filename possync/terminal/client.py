"""Sync client for exchanging changes with the relay.

Runs push-then-pull cycles, periodically or on demand, with at most one
cycle in flight per terminal.
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import httpx

from ..config import SyncConfig
from ..errors import InvalidRequest, NetworkError, StorageError, SyncError
from .apply import ApplierRegistry, ApplyReport, RemoteChange, apply_batch
from .cursor import CursorStore
from .identity import IdentityStore, TerminalIdentity
from .outbox import Outbox, OutboxEntry
from .store import TerminalStore

logger = logging.getLogger(__name__)


def _item_version(item: Any) -> int | None:
    """Version of a raw pull item, or None if it has no usable one."""
    try:
        return int(item["version"])
    except (KeyError, TypeError, ValueError):
        return None


class SyncStatus(Enum):
    """Status of a sync cycle."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some changes were rejected or failed to apply
    FAILED = "failed"
    OFFLINE = "offline"  # Relay unavailable
    SKIPPED = "skipped"  # No relay configured, or a cycle already running


class SyncState(Enum):
    """Coarse indicator shown to the user."""

    SYNCING = "syncing"
    SYNCED = "synced"
    OFFLINE = "offline"
    ERROR = "error"


@dataclass
class SyncResult:
    """Result of a sync cycle."""

    status: SyncStatus
    entries_pushed: int = 0
    entries_pulled: int = 0
    entries_failed: list[int] = field(default_factory=list)
    entries_rejected: int = 0
    latest_version: int | None = None
    error: str | None = None
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "entries_pushed": self.entries_pushed,
            "entries_pulled": self.entries_pulled,
            "entries_failed": self.entries_failed,
            "entries_rejected": self.entries_rejected,
            "latest_version": self.latest_version,
            "error": self.error,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class SyncClient:
    """Terminal-side orchestrator of the outbox/relay protocol.

    Lifecycle: construct once per process, ``initialize()`` before the
    first cycle, ``close()`` (or ``stop_periodic_sync()``) before exit.
    """

    def __init__(
        self,
        store: TerminalStore,
        config: SyncConfig | None = None,
        registry: ApplierRegistry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the sync client.

        Args:
            store: Terminal store shared with the POS services.
            config: Sync settings (server URL, interval, batch size...).
            registry: Apply functions for pulled changes.
            transport: Optional httpx transport (tests route this to an
                in-process relay app).
        """
        self.store = store
        self.config = config or SyncConfig()
        self.registry = registry or ApplierRegistry()
        self.server_url = self.config.server_url or None
        self.outbox = Outbox(store)
        self.cursors = CursorStore(store)
        self.identities = IdentityStore(store)
        self.identity: TerminalIdentity | None = None

        self._transport = transport
        self._in_flight = False
        self._state = SyncState.SYNCED if self.server_url else SyncState.OFFLINE
        self._last_sync: datetime | None = None
        self._last_result: SyncResult | None = None
        self._consecutive_failures = 0
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

    # ==================== Lifecycle ====================

    def initialize(
        self,
        store_id: int = 1,
        hostname: str | None = None,
        server_url: str | None = None,
    ) -> TerminalIdentity:
        """Establish terminal identity and bind the outbox to it.

        Args:
            store_id: Store for a first-time registration.
            hostname: Host name override for the terminal code.
            server_url: Relay URL; keeps the configured one if None.

        Returns:
            This terminal's identity.
        """
        if server_url:
            self.set_server_url(server_url)

        self.identity = self.identities.get_or_create(store_id, hostname)
        self.outbox.bind(self.identity.id, self.identity.store_id)
        return self.identity

    def set_server_url(self, url: str | None) -> None:
        """Set or update the relay URL."""
        self.server_url = url or None
        logger.info(f"Sync server URL set to {url}")

    @property
    def terminal_id(self) -> int | None:
        return self.identity.id if self.identity else None

    @property
    def store_id(self) -> int | None:
        return self.identity.store_id if self.identity else None

    def _require_identity(self) -> TerminalIdentity:
        if self.identity is None:
            raise RuntimeError("SyncClient.initialize() must be called first")
        return self.identity

    # ==================== Transport ====================

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make HTTP request with exponential backoff retry.

        Args:
            method: HTTP method (GET, POST).
            path: URL path to append to server_url.
            json_data: Optional JSON body.
            params: Optional query parameters.

        Returns:
            Decoded JSON response body.

        Raises:
            NetworkError: Relay unreachable, timed out or returned 5xx.
            InvalidRequest: Relay rejected the request (4xx).
        """
        if not self.server_url:
            raise NetworkError("No sync server configured")

        url = f"{self.server_url.rstrip('/')}{path}"
        attempts = max(1, self.config.max_retries)
        backoff = 0.5
        last_error = "unknown error"

        async with httpx.AsyncClient(
            timeout=self.config.timeout_seconds, transport=self._transport
        ) as client:
            for attempt in range(attempts):
                try:
                    response = await client.request(
                        method, url, json=json_data, params=params
                    )
                except httpx.ConnectError as e:
                    last_error = f"Connection failed: {e}"
                    logger.warning(f"Connection failed, attempt {attempt + 1}/{attempts}")
                except httpx.TimeoutException:
                    last_error = "Request timeout"
                    logger.warning(f"Request timeout, attempt {attempt + 1}/{attempts}")
                except httpx.HTTPError as e:
                    raise NetworkError(f"Request error: {e}") from e
                else:
                    if response.status_code == 200:
                        try:
                            return response.json()
                        except ValueError as e:
                            raise NetworkError(f"Invalid JSON from relay: {e}") from e

                    if response.status_code >= 500:
                        last_error = f"HTTP {response.status_code}: {response.text}"
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{attempts}"
                        )
                    else:
                        raise InvalidRequest(
                            f"HTTP {response.status_code}: {response.text}"
                        )

                if attempt < attempts - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        raise NetworkError(last_error)

    async def check_health(self) -> bool:
        """Check whether the relay answers its health endpoint."""
        try:
            data = await self._request_with_retry("GET", "/health")
        except SyncError:
            return False
        return data.get("status") == "ok"

    # ==================== Push / Pull ====================

    async def push_changes(self) -> int:
        """Push the oldest pending outbox entries as one batch.

        If the relay refuses the batch (4xx), each entry is pushed on its own
        so the ones it accepts still go through. Entries refused on their own
        are parked as rejected and are not sent again.

        Returns:
            Number of entries the relay accepted (0 if the outbox was empty).

        Raises:
            NetworkError: The relay was unreachable; every entry sent has a
                failed attempt recorded.
            StorageError: A confirmed batch could not be marked synced.
        """
        identity = self._require_identity()
        entries = self.outbox.get_pending(limit=self.config.batch_size)
        if not entries:
            return 0

        logger.info(f"Pushing {len(entries)} changes to relay...")

        try:
            await self._push_batch(identity, entries)
        except InvalidRequest as e:
            if len(entries) == 1:
                self._reject(entries, e)
                return 0
            logger.warning(
                f"Relay rejected a batch of {len(entries)}, "
                f"pushing entries one by one: {e}"
            )
            return await self._push_each(identity, entries)

        return len(entries)

    async def _push_batch(
        self, identity: TerminalIdentity, entries: list[OutboxEntry]
    ) -> dict[str, Any]:
        payload = {
            "terminal_id": identity.id,
            "store_id": identity.store_id,
            "changes": [e.to_change() for e in entries],
        }
        ids = [e.id for e in entries]

        try:
            data = await self._request_with_retry("POST", "/api/sync/push", payload)
        except SyncError as e:
            self.outbox.record_failure(ids, str(e))
            raise

        with self.store.transaction():
            self.outbox.mark_synced(ids)
            self.cursors.mark_pushed(identity.id)

        logger.debug(
            f"Relay accepted {data.get('changes_received')} changes, "
            f"latest_version={data.get('latest_version')}"
        )
        return data

    async def _push_each(
        self, identity: TerminalIdentity, entries: list[OutboxEntry]
    ) -> int:
        """Push entries singly, in order, parking the ones the relay refuses."""
        pushed = 0
        for entry in entries:
            try:
                await self._push_batch(identity, [entry])
            except InvalidRequest as e:
                self._reject([entry], e)
            else:
                pushed += 1
        return pushed

    def _reject(self, entries: list[OutboxEntry], error: InvalidRequest) -> None:
        for entry in entries:
            logger.error(
                f"Relay rejected outbox #{entry.id} "
                f"({entry.entity_type}:{entry.entity_id}), needs attention: {error}"
            )
        self.outbox.mark_rejected([e.id for e in entries], str(error))

    async def pull_changes(self) -> tuple[int, ApplyReport, int]:
        """Pull and replay changes above the cursor.

        Follows ``has_more`` for up to ``max_pull_pages`` pages.

        Returns:
            Tuple of (entries pulled, combined apply report, latest version).
        """
        identity = self._require_identity()
        since = self.cursors.get(identity.id).last_sync_version
        combined = ApplyReport(watermark=since)
        pulled = 0
        latest_version = since

        for _ in range(max(1, self.config.max_pull_pages)):
            data = await self._request_with_retry(
                "GET",
                "/api/sync/pull",
                params={"terminal_id": identity.id, "since_version": since},
            )

            items = data.get("changes") or []
            changes = []
            for item in items:
                try:
                    changes.append(RemoteChange.from_dict(item))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Ignoring malformed change from relay: {e}")

            latest_version = int(data.get("latest_version") or since)
            has_more = bool(data.get("has_more"))
            if has_more:
                # Malformed items still count towards the page end, otherwise
                # the cursor would jump past pages never fetched.
                versions = [v for v in map(_item_version, items) if v is not None]
                target = max(versions, default=since)
                if target <= since:
                    logger.warning(
                        f"Relay page above v{since} has no usable versions, "
                        "stopping pull for this cycle"
                    )
                    break
            else:
                target = latest_version

            def finalize(conn: sqlite3.Connection, report: ApplyReport) -> None:
                new_version = report.watermark if report.halted else target
                self.cursors.advance(identity.id, new_version)

            if changes:
                logger.info(f"Applying {len(changes)} remote changes...")

            report = apply_batch(
                self.store,
                self.registry,
                changes,
                base_version=since,
                policy=self.config.apply_failure_policy,
                finalize=finalize,
            )

            pulled += len(changes)
            combined.applied += report.applied
            combined.skipped += report.skipped
            combined.failed.extend(report.failed)
            combined.halted = report.halted
            since = self.cursors.get(identity.id).last_sync_version
            combined.watermark = since

            if report.halted or not has_more:
                break

        return pulled, combined, latest_version

    # ==================== Cycle ====================

    async def run_sync_cycle(self) -> SyncResult:
        """Push local changes, then pull remote ones.

        Never raises for sync failures; they are reported in the result and
        reflected in :attr:`state`.

        Returns:
            SyncResult for this cycle.
        """
        if not self.server_url:
            logger.debug("Sync server not configured, skipping sync")
            self._state = SyncState.OFFLINE
            return SyncResult(
                status=SyncStatus.SKIPPED,
                error="No sync server configured",
                timestamp=datetime.now(),
            )

        if self._in_flight:
            logger.debug("Sync cycle already in flight, skipping")
            return SyncResult(
                status=SyncStatus.SKIPPED,
                error="Sync cycle already in flight",
                timestamp=datetime.now(),
            )

        self._require_identity()
        self._in_flight = True
        self._state = SyncState.SYNCING
        try:
            result = await self._cycle()
        finally:
            self._in_flight = False

        self._record_result(result)
        return result

    async def sync_now(self) -> SyncResult:
        """Manual "sync now" trigger; shares the in-flight guard."""
        return await self.run_sync_cycle()

    async def _cycle(self) -> SyncResult:
        identity = self._require_identity()
        pushed = 0

        try:
            rejected_before = self.outbox.count_rejected()
            pushed = await self.push_changes()
            self._warn_stuck()
            pulled, report, latest_version = await self.pull_changes()
            self.identities.touch_last_sync(identity.id)
        except NetworkError as e:
            logger.warning(f"Sync failed, relay unavailable: {e}")
            self._warn_stuck()
            return SyncResult(
                status=SyncStatus.OFFLINE,
                entries_pushed=pushed,
                error=str(e),
                timestamp=datetime.now(),
            )
        except InvalidRequest as e:
            logger.error(f"Relay rejected sync request, needs attention: {e}")
            self._warn_stuck()
            return SyncResult(
                status=SyncStatus.FAILED,
                entries_pushed=pushed,
                error=str(e),
                timestamp=datetime.now(),
            )
        except (StorageError, sqlite3.Error) as e:
            logger.error(f"Local storage failure during sync: {e}")
            return SyncResult(
                status=SyncStatus.FAILED,
                entries_pushed=pushed,
                error=str(e),
                timestamp=datetime.now(),
            )
        except Exception as e:
            logger.error(f"Unexpected error during sync: {e}", exc_info=True)
            return SyncResult(
                status=SyncStatus.FAILED,
                entries_pushed=pushed,
                error=f"{type(e).__name__}: {e}",
                timestamp=datetime.now(),
            )

        rejected = self.outbox.count_rejected() - rejected_before

        logger.info(
            f"Sync completed: pushed={pushed}, rejected={rejected}, pulled={pulled}, "
            f"failed={len(report.failed)}, version={report.watermark}",
            extra={"terminal": identity.terminal_code},
        )
        return SyncResult(
            status=SyncStatus.PARTIAL if report.failed or rejected else SyncStatus.SUCCESS,
            entries_pushed=pushed,
            entries_pulled=pulled,
            entries_failed=report.failed,
            entries_rejected=rejected,
            latest_version=latest_version,
            timestamp=datetime.now(),
        )

    def _record_result(self, result: SyncResult) -> None:
        self._last_result = result

        if result.status in (SyncStatus.SUCCESS, SyncStatus.PARTIAL):
            self._consecutive_failures = 0
            self._last_sync = result.timestamp
            self._state = SyncState.SYNCED
        elif result.status == SyncStatus.OFFLINE:
            self._consecutive_failures += 1
            self._state = SyncState.OFFLINE
        elif result.status == SyncStatus.FAILED:
            self._consecutive_failures += 1
            self._state = SyncState.ERROR

    def _warn_stuck(self) -> None:
        stats = self.outbox.get_stats(stuck_threshold=self.config.stuck_threshold)
        stuck = stats["stuck_entries"]
        if stuck:
            logger.warning(
                f"{stuck} outbox entries have failed "
                f"{self.config.stuck_threshold}+ push attempts"
            )

    # ==================== Periodic sync ====================

    def next_delay(self) -> float:
        """Seconds until the next periodic cycle, backing off after failures."""
        interval = self.config.interval_seconds
        if self._consecutive_failures > 0:
            return min(
                interval * (2 ** self._consecutive_failures),
                max(interval, self.config.max_backoff_seconds),
            )
        return interval

    async def start_periodic_sync(self) -> None:
        """Start the timer-driven loop; runs one cycle immediately."""
        if self._task and not self._task.done():
            return

        self._require_identity()
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Periodic sync started (interval={self.config.interval_seconds}s)"
        )

    async def stop_periodic_sync(self) -> None:
        """Stop scheduling cycles; lets an in-flight cycle finish."""
        if not self._task:
            return

        if self._stop_event:
            self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Periodic sync stopped")

    async def close(self) -> None:
        """Stop periodic sync and release the terminal store."""
        await self.stop_periodic_sync()
        self.store.close()

    @property
    def is_periodic_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_loop(self) -> None:
        """Main periodic loop."""
        while not self._stop_event.is_set():
            try:
                result = await self.run_sync_cycle()
                logger.debug(
                    f"Sync: {result.status.value}, "
                    f"pushed={result.entries_pushed}, "
                    f"pulled={result.entries_pulled}"
                )
            except Exception as e:
                logger.error(f"Sync loop error: {e}", exc_info=True)

            wait_time = self.next_delay()
            if wait_time != self.config.interval_seconds:
                logger.debug(f"Backing off sync for {wait_time}s")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=wait_time)
                break  # Stop event was set
            except asyncio.TimeoutError:
                pass  # Normal timeout, continue loop

    # ==================== Status ====================

    @property
    def state(self) -> SyncState:
        """Current coarse indicator state."""
        return self._state

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of last successful sync."""
        return self._last_sync

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with terminal, cursor and outbox statistics.
        """
        outbox_stats = self.outbox.get_stats(
            stuck_threshold=self.config.stuck_threshold
        )
        status: dict[str, Any] = {
            "server_url": self.server_url,
            "state": self._state.value,
            "terminal_id": self.terminal_id,
            "store_id": self.store_id,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "consecutive_failures": self._consecutive_failures,
            "pending_entries": outbox_stats["pending_entries"],
            "stuck_entries": outbox_stats["stuck_entries"],
            "rejected_entries": outbox_stats["rejected_entries"],
            "total_entries": outbox_stats["total_entries"],
            "periodic": self.is_periodic_running,
            "last_result": self._last_result.to_dict() if self._last_result else None,
        }

        if self.identity:
            cursor = self.cursors.get(self.identity.id)
            status["last_sync_version"] = cursor.last_sync_version
            status["last_pull_at"] = cursor.last_pull_at
            status["last_push_at"] = cursor.last_push_at

        return status
