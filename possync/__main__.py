"""CLI entry point for possync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .terminal import SyncClient, SyncStatus, TerminalStore

logger = logging.getLogger(__name__)


# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "zeroconf", "uvicorn.access")

LOG_LEVELS = {
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per log line, for log shippers on the till."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        terminal = getattr(record, "terminal", None)
        if terminal is not None:
            entry["terminal"] = terminal
        if record.exc_info:
            entry["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(entry, default=str)


def setup_logging(
    verbose: bool = False,
    log_level: str | None = None,
    json_logs: bool = False,
) -> None:
    """Configure root logging for the CLI.

    Args:
        verbose: Debug logging, unless log_level says otherwise.
        log_level: One of warning, info, debug.
        json_logs: Emit JSON lines instead of plain text.
    """
    if log_level:
        level = LOG_LEVELS.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    handler.setFormatter(
        JSONFormatter()
        if json_logs
        else logging.Formatter(
            fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logging.basicConfig(level=level, handlers=[handler], force=True)

    if level > logging.DEBUG:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


async def _build_client(config: Config) -> SyncClient:
    """Open the terminal store and initialize a sync client."""
    store = TerminalStore(config.terminal.db_path)
    store.connect()

    client = SyncClient(store, config.sync)
    client.initialize(
        store_id=config.terminal.store_id,
        hostname=config.terminal.hostname,
    )

    if not client.server_url and config.discovery.enabled and config.discovery.browse:
        from .discovery import discover_relay_url

        url = await discover_relay_url(
            service_type=config.discovery.service_type,
            timeout=config.discovery.discovery_timeout_seconds,
            cache_ttl_seconds=config.discovery.cache_ttl_seconds,
        )
        if url:
            client.set_server_url(url)

    return client


async def cmd_relay(args: argparse.Namespace) -> int:
    """Run the central relay server."""
    config = load_config(args.config)
    if args.port:
        config.relay.port = args.port
    if args.host:
        config.relay.host = args.host

    import uvicorn

    from .relay import ChangeLog, create_app

    changelog = ChangeLog(config.relay.db_path)
    changelog.connect()
    app = create_app(config.relay, changelog=changelog)

    announcer = None
    if config.discovery.enabled and config.discovery.announce:
        from .discovery import RelayAnnouncer

        announcer = RelayAnnouncer(
            name=config.relay.name,
            port=config.relay.port,
            service_type=config.discovery.service_type,
        )
        await announcer.start()

    print("Starting possync relay")
    print(f"URL: http://{config.relay.host}:{config.relay.port}")
    print(f"Database: {changelog.db_path or ':memory:'}")

    try:
        server_config = uvicorn.Config(
            app,
            host=config.relay.host,
            port=config.relay.port,
            log_level="info" if args.verbose else "warning",
        )
        server = uvicorn.Server(server_config)
        await server.serve()
    finally:
        if announcer:
            await announcer.stop()
        changelog.close()
        print("\nShutting down sync relay...")

    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run a single sync cycle."""
    config = load_config(args.config)

    if not config.sync.enabled:
        print("Sync is disabled in configuration", file=sys.stderr)
        return 1

    client = await _build_client(config)

    try:
        result = await client.sync_now()
    finally:
        client.store.close()

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(f"Sync: {result.status.value}")
        print(f"  Pushed: {result.entries_pushed}")
        if result.entries_rejected:
            print(f"  Rejected by relay: {result.entries_rejected}")
        print(f"  Pulled: {result.entries_pulled}")
        if result.entries_failed:
            print(f"  Failed to apply: {', '.join(map(str, result.entries_failed))}")
        if result.error:
            print(f"  Error: {result.error}")

    return 0 if result.status in (SyncStatus.SUCCESS, SyncStatus.PARTIAL) else 1


async def cmd_run(args: argparse.Namespace) -> int:
    """Run periodic sync until interrupted."""
    config = load_config(args.config)

    if not config.sync.enabled:
        print("Sync is disabled in configuration", file=sys.stderr)
        return 1

    client = await _build_client(config)

    print(f"Terminal: {client.identity.terminal_code} (ID: {client.terminal_id})")
    print(f"Relay: {client.server_url or 'not configured (offline mode)'}")
    print(f"Interval: {config.sync.interval_seconds}s")

    await client.start_periodic_sync()
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\nShutting down...")
    finally:
        await client.close()

    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Show terminal sync status and relay connectivity."""
    config = load_config(args.config)
    client = await _build_client(config)

    try:
        status = client.get_sync_status()
        status["timestamp"] = datetime.now().isoformat()
        status["terminal_code"] = client.identity.terminal_code
        status["relay_reachable"] = (
            await client.check_health() if client.server_url else False
        )
        outbox_stats = client.outbox.get_stats(
            stuck_threshold=config.sync.stuck_threshold
        )
        status["outbox"] = outbox_stats
    finally:
        client.store.close()

    if args.json:
        print(json.dumps(status, indent=2))
        return 0

    print("possync Status Check")
    print("====================")
    print(f"Terminal: {status['terminal_code']} (ID: {status['terminal_id']}, store {status['store_id']})")
    print()

    print(f"Relay ({status['server_url'] or 'not configured'}):")
    print(f"  Status: {'Reachable' if status['relay_reachable'] else 'Not reachable'}")
    print()

    print("Cursor:")
    print(f"  Last sync version: {status.get('last_sync_version', 0)}")
    print(f"  Last pull: {status.get('last_pull_at') or 'never'}")
    print(f"  Last push: {status.get('last_push_at') or 'never'}")
    print()

    print("Outbox:")
    print(f"  Pending: {outbox_stats['pending_entries']}")
    print(f"  Synced: {outbox_stats['synced_entries']}")
    print(f"  Stuck ({config.sync.stuck_threshold}+ attempts): {outbox_stats['stuck_entries']}")
    if outbox_stats["rejected_entries"]:
        print(f"  Rejected by relay: {outbox_stats['rejected_entries']}")
    if outbox_stats["oldest_pending_at"]:
        print(f"  Oldest pending: {outbox_stats['oldest_pending_at']}")

    return 0


def build_parser() -> argparse.ArgumentParser:
    """Argument parser for the possync command."""
    parser = argparse.ArgumentParser(
        prog="possync",
        description="Outbox-based change sync between POS terminals and a relay",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="YAML config file (POSSYNC_* environment variables override it)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument(
        "--log-level",
        choices=sorted(LOG_LEVELS),
        default=None,
        help="Log level (takes precedence over -v)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Write logs as JSON lines",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    relay = subparsers.add_parser("relay", help="Serve the central change log")
    relay.add_argument("-p", "--port", type=int, default=None, help="Listen port (default: 3001)")
    relay.add_argument("--host", default=None, help="Bind address (default: 0.0.0.0)")
    relay.set_defaults(func=cmd_relay)

    sync = subparsers.add_parser("sync", help="Run one push/pull cycle now")
    sync.add_argument("--json", action="store_true", help="Print the result as JSON")
    sync.set_defaults(func=cmd_sync)

    run = subparsers.add_parser("run", help="Sync periodically until interrupted")
    run.set_defaults(func=cmd_run)

    status = subparsers.add_parser("status", help="Show terminal sync status")
    status.add_argument("--json", action="store_true", help="Print the status as JSON")
    status.set_defaults(func=cmd_status)

    return parser


def main() -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
