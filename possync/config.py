"""Configuration loading for possync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

APPLY_FAILURE_POLICIES = ("skip", "halt")


@dataclass
class TerminalConfig:
    """Terminal-local settings."""

    db_path: str = "~/.possync/terminal.db"
    store_id: int = 1
    hostname: str | None = None  # Defaults to socket.gethostname()


@dataclass
class SyncConfig:
    """Configuration for the terminal sync client."""

    enabled: bool = True
    server_url: str = ""  # Empty means offline mode unless discovery finds a relay
    interval_seconds: float = 30.0
    batch_size: int = 100
    timeout_seconds: float = 5.0
    max_retries: int = 1
    max_pull_pages: int = 10
    apply_failure_policy: str = "skip"  # "skip" or "halt"
    stuck_threshold: int = 10
    max_backoff_seconds: float = 300.0


@dataclass
class RelayConfig:
    """Configuration for the central relay server."""

    host: str = "0.0.0.0"
    port: int = 3001
    db_path: str = "~/.possync/relay.db"
    page_size: int = 1000
    name: str = "possync-relay"


@dataclass
class DiscoveryConfig:
    """Configuration for mDNS/Zeroconf relay discovery."""

    enabled: bool = False
    service_type: str = "_possync._tcp"
    announce: bool = True  # Relay announces itself
    browse: bool = True  # Terminal browses when no server_url is set
    cache_ttl_seconds: int = 300
    discovery_timeout_seconds: int = 5


@dataclass
class Config:
    terminal: TerminalConfig = field(default_factory=TerminalConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with POSSYNC_ prefix."""
    return os.environ.get(f"POSSYNC_{key}", default)


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Terminal overrides
    if db_path := _get_env("TERMINAL_DB_PATH"):
        config.terminal.db_path = db_path
    if store_id := _get_env("TERMINAL_STORE_ID"):
        config.terminal.store_id = int(store_id)
    if hostname := _get_env("TERMINAL_HOSTNAME"):
        config.terminal.hostname = hostname

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = _as_bool(sync_enabled)
    if server_url := _get_env("SYNC_SERVER_URL"):
        config.sync.server_url = server_url
    if interval := _get_env("SYNC_INTERVAL"):
        config.sync.interval_seconds = float(interval)
    if batch_size := _get_env("SYNC_BATCH_SIZE"):
        config.sync.batch_size = int(batch_size)
    if timeout := _get_env("SYNC_TIMEOUT"):
        config.sync.timeout_seconds = float(timeout)
    if policy := _get_env("SYNC_APPLY_FAILURE_POLICY"):
        config.sync.apply_failure_policy = policy

    # Relay overrides
    if host := _get_env("RELAY_HOST"):
        config.relay.host = host
    if port := _get_env("RELAY_PORT"):
        config.relay.port = int(port)
    if relay_db := _get_env("RELAY_DB_PATH"):
        config.relay.db_path = relay_db

    # Discovery overrides
    if discovery_enabled := _get_env("DISCOVERY_ENABLED"):
        config.discovery.enabled = _as_bool(discovery_enabled)

    return config


def _validate(config: Config) -> None:
    if config.sync.apply_failure_policy not in APPLY_FAILURE_POLICIES:
        raise ValueError(
            f"Invalid apply_failure_policy {config.sync.apply_failure_policy!r}, "
            f"expected one of {', '.join(APPLY_FAILURE_POLICIES)}"
        )
    if config.sync.batch_size < 1:
        raise ValueError("sync.batch_size must be at least 1")
    if config.relay.page_size < 1:
        raise ValueError("relay.page_size must be at least 1")


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded and validated Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse terminal config
            if "terminal" in data:
                term_data = data["terminal"]
                config.terminal = TerminalConfig(
                    db_path=term_data.get("db_path", config.terminal.db_path),
                    store_id=term_data.get("store_id", config.terminal.store_id),
                    hostname=term_data.get("hostname", config.terminal.hostname),
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    server_url=sync_data.get("server_url", config.sync.server_url),
                    interval_seconds=sync_data.get(
                        "interval_seconds", config.sync.interval_seconds
                    ),
                    batch_size=sync_data.get("batch_size", config.sync.batch_size),
                    timeout_seconds=sync_data.get(
                        "timeout_seconds", config.sync.timeout_seconds
                    ),
                    max_retries=sync_data.get("max_retries", config.sync.max_retries),
                    max_pull_pages=sync_data.get(
                        "max_pull_pages", config.sync.max_pull_pages
                    ),
                    apply_failure_policy=sync_data.get(
                        "apply_failure_policy", config.sync.apply_failure_policy
                    ),
                    stuck_threshold=sync_data.get(
                        "stuck_threshold", config.sync.stuck_threshold
                    ),
                    max_backoff_seconds=sync_data.get(
                        "max_backoff_seconds", config.sync.max_backoff_seconds
                    ),
                )

            # Parse relay config
            if "relay" in data:
                relay_data = data["relay"]
                config.relay = RelayConfig(
                    host=relay_data.get("host", config.relay.host),
                    port=relay_data.get("port", config.relay.port),
                    db_path=relay_data.get("db_path", config.relay.db_path),
                    page_size=relay_data.get("page_size", config.relay.page_size),
                    name=relay_data.get("name", config.relay.name),
                )

            # Parse discovery config
            if "discovery" in data:
                disc_data = data["discovery"]
                config.discovery = DiscoveryConfig(
                    enabled=disc_data.get("enabled", config.discovery.enabled),
                    service_type=disc_data.get(
                        "service_type", config.discovery.service_type
                    ),
                    announce=disc_data.get("announce", config.discovery.announce),
                    browse=disc_data.get("browse", config.discovery.browse),
                    cache_ttl_seconds=disc_data.get(
                        "cache_ttl_seconds", config.discovery.cache_ttl_seconds
                    ),
                    discovery_timeout_seconds=disc_data.get(
                        "discovery_timeout_seconds",
                        config.discovery.discovery_timeout_seconds,
                    ),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    _validate(config)

    return config
