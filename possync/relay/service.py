"""Relay sync service: request validation on top of the change log."""

import json
import logging
from typing import Any

from ..errors import InvalidRequest
from .changelog import ChangeLog

logger = logging.getLogger(__name__)

ACTIONS = ("create", "update", "delete")
REQUIRED_CHANGE_FIELDS = ("entity_type", "entity_id", "action", "data")


def _parse_id(value: Any, name: str) -> int:
    """Parse a required positive integer id."""
    if value is None or isinstance(value, bool):
        raise InvalidRequest(f"{name} required")
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"{name} must be an integer") from None
    if parsed <= 0:
        raise InvalidRequest(f"{name} must be positive")
    return parsed


def _parse_version(value: Any) -> int:
    """Parse since_version; anything absent or invalid means 0."""
    if value is None or isinstance(value, bool):
        return 0
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def _normalize_change(index: int, change: Any) -> dict[str, Any]:
    if not isinstance(change, dict):
        raise InvalidRequest(f"changes[{index}] must be an object")

    missing = [f for f in REQUIRED_CHANGE_FIELDS if change.get(f) in (None, "")]
    if missing:
        raise InvalidRequest(f"changes[{index}] missing {', '.join(missing)}")

    if change["action"] not in ACTIONS:
        raise InvalidRequest(f"changes[{index}] has invalid action {change['action']!r}")

    if not isinstance(change["entity_type"], str):
        raise InvalidRequest(f"changes[{index}] entity_type must be a string")

    data = change["data"]
    if not isinstance(data, str):
        data = json.dumps(data)

    return {
        "entity_type": change["entity_type"],
        "entity_id": _parse_id(change["entity_id"], f"changes[{index}].entity_id"),
        "action": change["action"],
        "data": data,
    }


class RelaySyncService:
    """Accepts pushes and serves pulls.

    Stateless between requests beyond the persisted change log.
    """

    def __init__(self, changelog: ChangeLog, page_size: int = 1000):
        """Initialize the service.

        Args:
            changelog: Change log to append to and read from.
            page_size: Maximum changes returned by one pull.
        """
        self.changelog = changelog
        self.page_size = page_size

    def push(self, store_id: Any, terminal_id: Any, changes: Any) -> dict[str, Any]:
        """Append a terminal's batch to the change log.

        Raises:
            InvalidRequest: If a required field is missing or malformed.
            StorageError: If the append transaction fails.
        """
        terminal = _parse_id(terminal_id, "terminal_id")
        store = _parse_id(store_id, "store_id")
        if not isinstance(changes, list):
            raise InvalidRequest("changes must be a list")

        normalized = [_normalize_change(i, c) for i, c in enumerate(changes)]
        count, latest_version = self.changelog.append_batch(store, terminal, normalized)

        logger.info(
            f"Accepted {count} changes from terminal {terminal} "
            f"(store {store}), latest_version={latest_version}"
        )
        return {
            "success": True,
            "changes_received": count,
            "latest_version": latest_version,
        }

    def pull(self, terminal_id: Any, since_version: Any = None) -> dict[str, Any]:
        """Changes above ``since_version`` not made by the requester.

        Raises:
            InvalidRequest: If terminal_id is absent or invalid.
            StorageError: If the read fails.
        """
        terminal = _parse_id(terminal_id, "terminal_id")
        since = _parse_version(since_version)

        entries, latest_version, has_more = self.changelog.changes_since(
            since, exclude_terminal_id=terminal, limit=self.page_size
        )

        logger.debug(
            f"Terminal {terminal} pulled {len(entries)} changes since {since}"
        )
        return {
            "success": True,
            "changes": [e.to_dict() for e in entries],
            "latest_version": latest_version,
            "count": len(entries),
            "has_more": has_more,
        }
