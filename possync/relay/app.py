"""FastAPI application for the central relay."""

import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..config import RelayConfig
from ..errors import InvalidRequest, StorageError
from .changelog import ChangeLog
from .service import RelaySyncService

logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message},
    )


def create_app(
    config: RelayConfig | None = None,
    changelog: ChangeLog | None = None,
) -> FastAPI:
    """Create the relay application.

    Args:
        config: Relay configuration.
        changelog: Change log to serve; opened from ``config.db_path`` if
            not given.

    Returns:
        Configured FastAPI application.
    """
    config = config or RelayConfig()
    if changelog is None:
        changelog = ChangeLog(config.db_path)
        changelog.connect()

    service = RelaySyncService(changelog, page_size=config.page_size)

    app = FastAPI(
        title="possync relay",
        description="Central change relay for POS terminals",
        version="0.1.0",
    )

    # Store references for route handlers
    app.state.config = config
    app.state.changelog = changelog
    app.state.service = service

    # ==================== Sync API ====================

    @app.post("/api/sync/push")
    async def push(request: Request):
        """Accept a batch of changes from a terminal."""
        try:
            body = await request.json()
        except ValueError:
            return _error(400, "Invalid request data")

        if not isinstance(body, dict):
            return _error(400, "Invalid request data")

        try:
            return service.push(
                body.get("store_id"), body.get("terminal_id"), body.get("changes")
            )
        except InvalidRequest as e:
            logger.warning(f"Rejected push: {e}")
            return _error(400, str(e))
        except StorageError as e:
            logger.error(f"Push error: {e}")
            return _error(500, str(e))

    @app.get("/api/sync/pull")
    async def pull(
        terminal_id: str | None = None,
        since_version: str | None = None,
    ):
        """Serve changes above a version, excluding the requester's own."""
        try:
            return service.pull(terminal_id, since_version)
        except InvalidRequest as e:
            return _error(400, str(e))
        except StorageError as e:
            logger.error(f"Pull error: {e}")
            return _error(500, str(e))

    # ==================== Dashboard API ====================

    @app.get("/api/dashboard/stats")
    async def dashboard_stats() -> dict[str, Any]:
        """Change log statistics."""
        stats = changelog.get_stats()
        stats["timestamp"] = datetime.now().isoformat()
        return stats

    @app.get("/api/dashboard/activity")
    async def dashboard_activity(limit: int = 50) -> list[dict[str, Any]]:
        """Recent sync activity, newest first."""
        limit = max(1, min(limit, 1000))
        return [e.to_dict() for e in changelog.recent_activity(limit)]

    # ==================== Health ====================

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check used by the terminal connectivity indicator."""
        return {"status": "ok", "timestamp": datetime.now().isoformat()}

    return app
