"""Replay of remote changes into the local store.

Each synced entity type supplies an apply function
``apply(conn, action, payload)``. ``create`` and ``update`` both upsert by
primary key and ``delete`` removes by primary key, so replaying the same
change twice leaves the same state.
"""

import json
import logging
import sqlite3
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from ..errors import ApplyError
from .store import TerminalStore

logger = logging.getLogger(__name__)

Applier = Callable[[sqlite3.Connection, str, dict[str, Any]], None]

PRODUCT_COLUMNS = (
    "id",
    "name",
    "sku",
    "barcode",
    "category_id",
    "price",
    "cost",
    "stock_quantity",
    "min_stock_level",
    "description",
    "image_url",
    "is_active",
    "store_id",
)
CATEGORY_COLUMNS = ("id", "name", "description", "store_id")
USER_COLUMNS = (
    "id",
    "username",
    "password_hash",
    "full_name",
    "role",
    "is_active",
    "store_id",
)

# Errors caused by the content of one change rather than by the store itself.
# Other sqlite3 errors (locked, I/O, corrupt) abort the whole batch.
ENTRY_ERRORS = (
    sqlite3.IntegrityError,
    sqlite3.ProgrammingError,
    sqlite3.DataError,
    sqlite3.InterfaceError,
)


@dataclass
class RemoteChange:
    """A change log entry as returned by the relay pull endpoint."""

    version: int
    entity_type: str
    entity_id: int
    action: str
    data: Any
    id: int | None = None
    store_id: int | None = None
    terminal_id: int | None = None
    created_at: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteChange":
        """Create from a pull response item."""
        return cls(
            version=int(data["version"]),
            entity_type=data["entity_type"],
            entity_id=data.get("entity_id"),
            action=data["action"],
            data=data.get("data"),
            id=data.get("id"),
            store_id=data.get("store_id"),
            terminal_id=data.get("terminal_id"),
            created_at=data.get("created_at"),
        )

    def payload(self) -> dict[str, Any]:
        """Decode the entity snapshot.

        Raises:
            ApplyError: If data is not a JSON object.
        """
        raw = self.data
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ApplyError(
                    f"Change v{self.version} has malformed data: {e}", self.version
                ) from e
        if not isinstance(raw, dict):
            raise ApplyError(
                f"Change v{self.version} data is not an object", self.version
            )
        return raw


def upsert_row(
    conn: sqlite3.Connection,
    table: str,
    columns: tuple[str, ...],
    payload: dict[str, Any],
) -> None:
    """Insert or replace a row by primary key using the known columns present."""
    if payload.get("id") is None:
        raise ApplyError(f"{table} payload has no id")

    present = [c for c in columns if c in payload]
    placeholders = ", ".join("?" * len(present))
    conn.execute(
        f"INSERT OR REPLACE INTO {table} ({', '.join(present)}) VALUES ({placeholders})",
        tuple(payload[c] for c in present),
    )


def delete_row(conn: sqlite3.Connection, table: str, row_id: Any) -> None:
    """Delete by primary key; an absent row is a no-op."""
    if row_id is None:
        raise ApplyError(f"{table} delete has no id")
    conn.execute(f"DELETE FROM {table} WHERE id = ?", (row_id,))


def table_applier(table: str, columns: tuple[str, ...]) -> Applier:
    """Build an apply function for a table keyed by ``id``."""

    def apply(conn: sqlite3.Connection, action: str, payload: dict[str, Any]) -> None:
        if action in ("create", "update"):
            upsert_row(conn, table, columns, payload)
        elif action == "delete":
            delete_row(conn, table, payload.get("id"))
        else:
            raise ApplyError(f"Unknown action {action!r} for {table}")

    apply.__name__ = f"apply_{table}"
    return apply


apply_product = table_applier("products", PRODUCT_COLUMNS)
apply_category = table_applier("categories", CATEGORY_COLUMNS)
apply_user = table_applier("users", USER_COLUMNS)


@dataclass
class ApplyReport:
    """Outcome of replaying one pulled batch."""

    applied: int = 0
    skipped: int = 0
    failed: list[int] = field(default_factory=list)
    halted: bool = False
    watermark: int = 0  # Highest version the cursor may move to

    @property
    def ok(self) -> bool:
        return not self.failed


class ApplierRegistry:
    """Maps entity types to their apply functions."""

    def __init__(self, include_builtins: bool = True):
        self._appliers: dict[str, Applier] = {}
        if include_builtins:
            self.register("product", apply_product)
            self.register("category", apply_category)
            self.register("user", apply_user)

    def register(self, entity_type: str, applier: Applier) -> None:
        """Register (or replace) the apply function for an entity type."""
        self._appliers[entity_type] = applier

    @property
    def entity_types(self) -> list[str]:
        return sorted(self._appliers)

    def __contains__(self, entity_type: str) -> bool:
        return entity_type in self._appliers

    def apply(self, conn: sqlite3.Connection, change: RemoteChange) -> bool:
        """Replay one change.

        Returns:
            False if the entity type is unknown and the change was skipped.

        Raises:
            ApplyError: If the change is malformed or rejected by the store.
        """
        applier = self._appliers.get(change.entity_type)
        if applier is None:
            logger.warning(
                f"Skipping change v{change.version}: unknown entity type "
                f"{change.entity_type!r}"
            )
            return False

        payload = change.payload()
        if change.action == "delete" and payload.get("id") is None:
            payload = {**payload, "id": change.entity_id}

        try:
            applier(conn, change.action, payload)
        except ApplyError as e:
            e.version = change.version
            raise
        except ENTRY_ERRORS as e:
            raise ApplyError(
                f"Change v{change.version} ({change.entity_type}:{change.entity_id}) "
                f"rejected: {e}",
                change.version,
            ) from e
        except sqlite3.Error:
            raise
        except Exception as e:
            raise ApplyError(
                f"Change v{change.version} ({change.entity_type}:{change.entity_id}) "
                f"failed in {change.entity_type} applier: {e!r}",
                change.version,
            ) from e

        return True


def apply_batch(
    store: TerminalStore,
    registry: ApplierRegistry,
    changes: Iterable[RemoteChange],
    base_version: int = 0,
    policy: str = "skip",
    finalize: Callable[[sqlite3.Connection, ApplyReport], None] | None = None,
) -> ApplyReport:
    """Replay a pulled batch inside one local transaction.

    Changes are sorted by version first. Each change runs under its own
    savepoint so a failed entry is rolled back alone. With ``policy="skip"``
    failures are logged and passed over; with ``policy="halt"`` processing
    stops at the first failure and the watermark stays below it.

    Args:
        store: Terminal store to write to.
        registry: Entity apply functions.
        changes: Pulled changes, in any order.
        base_version: Cursor value before this batch.
        policy: "skip" or "halt".
        finalize: Called with the report before commit, e.g. to advance the
            cursor in the same transaction.

    Returns:
        ApplyReport describing what happened.

    Raises:
        StorageError: If the transaction itself fails; nothing is committed.
    """
    ordered = sorted(changes, key=lambda c: c.version)
    report = ApplyReport(watermark=base_version)

    with store.transaction() as conn:
        for change in ordered:
            conn.execute("SAVEPOINT apply_entry")
            try:
                applied = registry.apply(conn, change)
            except ApplyError as e:
                conn.execute("ROLLBACK TO apply_entry")
                conn.execute("RELEASE apply_entry")
                logger.error(f"Failed to apply change v{change.version}: {e}")
                report.failed.append(change.version)
                if policy == "halt":
                    report.halted = True
                    break
            else:
                conn.execute("RELEASE apply_entry")
                if applied:
                    report.applied += 1
                else:
                    report.skipped += 1

            report.watermark = max(report.watermark, change.version)

        if finalize:
            finalize(conn, report)

    if ordered:
        logger.info(
            f"Applied {report.applied} remote changes "
            f"(skipped={report.skipped}, failed={len(report.failed)})"
        )
    return report
