"""mDNS/Zeroconf discovery of the sync relay.

The relay advertises its HTTP endpoint as ``_possync._tcp`` with a
``role=relay`` TXT record; terminals without a configured server URL browse
for it and adopt the most recently seen one.
"""

import asyncio
import logging
import socket
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from zeroconf import ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from .. import __version__
from ..terminal.identity import get_local_ip

logger = logging.getLogger(__name__)

RELAY_ROLE = "relay"


def _fqdn(service_type: str) -> str:
    return f"{service_type}.local."


@dataclass
class RelayEndpoint:
    """A relay seen on the local network."""

    name: str
    address: str
    port: int
    properties: dict[str, str] = field(default_factory=dict)
    last_seen: datetime = field(default_factory=datetime.now)

    @property
    def url(self) -> str:
        return f"http://{self.address}:{self.port}"


def _decode_properties(raw: dict) -> dict[str, str]:
    """TXT records arrive as bytes; keys or values may be None."""
    decoded = {}
    for key, value in raw.items():
        if key is None:
            continue
        k = key.decode("utf-8", "replace") if isinstance(key, bytes) else str(key)
        if isinstance(value, bytes):
            decoded[k] = value.decode("utf-8", "replace")
        else:
            decoded[k] = "" if value is None else str(value)
    return decoded


class RelayAnnouncer:
    """Publishes the relay endpoint while the relay is serving."""

    def __init__(self, name: str, port: int, service_type: str = "_possync._tcp"):
        self.name = name
        self.port = port
        self.service_type = service_type
        self._aiozc: AsyncZeroconf | None = None
        self._info: AsyncServiceInfo | None = None

    async def start(self) -> None:
        """Register the relay service."""
        address = get_local_ip()
        self._info = AsyncServiceInfo(
            _fqdn(self.service_type),
            f"{self.name}.{_fqdn(self.service_type)}",
            addresses=[socket.inet_aton(address)],
            port=self.port,
            properties={"role": RELAY_ROLE, "version": __version__},
            server=f"{socket.gethostname()}.local.",
        )
        self._aiozc = AsyncZeroconf()
        await self._aiozc.async_register_service(self._info)
        logger.info(f"Announcing relay {self.name} at {address}:{self.port}")

    async def stop(self) -> None:
        """Withdraw the announcement."""
        if self._aiozc is None:
            return
        if self._info is not None:
            await self._aiozc.async_unregister_service(self._info)
        await self._aiozc.async_close()
        self._aiozc = None
        self._info = None
        logger.info("Relay announcement withdrawn")


class RelayBrowser:
    """Keeps a short-lived directory of relays seen via mDNS."""

    def __init__(self, service_type: str = "_possync._tcp", cache_ttl_seconds: int = 300):
        """Initialize the browser.

        Args:
            service_type: mDNS service type to browse for.
            cache_ttl_seconds: How long a sighting stays valid.
        """
        self.service_type = service_type
        self.cache_ttl = timedelta(seconds=cache_ttl_seconds)
        self._relays: dict[str, RelayEndpoint] = {}
        self._found = asyncio.Event()
        self._aiozc: AsyncZeroconf | None = None
        self._browser: AsyncServiceBrowser | None = None
        self._pending: set[asyncio.Task] = set()

    def _on_state_change(
        self,
        zeroconf: Zeroconf,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        # Called on the event loop; lookups must not block it.
        if state_change is ServiceStateChange.Removed:
            self.forget(name)
            return

        task = asyncio.ensure_future(self._resolve(zeroconf, service_type, name))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _resolve(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        info = AsyncServiceInfo(service_type, name)
        if not await info.async_request(zeroconf, 3000):
            logger.debug(f"No answer resolving {name}")
            return

        addresses = info.parsed_addresses()
        if not addresses or info.port is None:
            return

        self.add_relay(name, addresses[0], info.port, _decode_properties(info.properties))

    def add_relay(
        self,
        name: str,
        address: str,
        port: int,
        properties: dict[str, str] | None = None,
    ) -> RelayEndpoint | None:
        """Record a sighting. Services advertising another role are ignored."""
        properties = properties or {}
        role = properties.get("role", RELAY_ROLE)
        if role != RELAY_ROLE:
            logger.debug(f"Ignoring {name}: role {role!r}")
            return None

        endpoint = RelayEndpoint(
            name=name.split(".")[0],
            address=address,
            port=port,
            properties=properties,
        )
        self._relays[name] = endpoint
        self._found.set()
        logger.info(f"Discovered relay {endpoint.name} at {endpoint.url}")
        return endpoint

    def forget(self, name: str) -> None:
        endpoint = self._relays.pop(name, None)
        if endpoint:
            logger.info(f"Relay {endpoint.name} went away")
        if not self._relays:
            self._found.clear()

    def get_relays(self) -> list[RelayEndpoint]:
        """Relays seen within the cache TTL, most recent first."""
        cutoff = datetime.now() - self.cache_ttl
        for name in [n for n, r in self._relays.items() if r.last_seen <= cutoff]:
            self.forget(name)
        return sorted(self._relays.values(), key=lambda r: r.last_seen, reverse=True)

    async def wait_for_relay(self, timeout: float = 5) -> str | None:
        """URL of the freshest relay, waiting up to ``timeout`` for one."""
        relays = self.get_relays()
        if not relays:
            try:
                await asyncio.wait_for(self._found.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"No relay discovered after {timeout}s")
                return None
            relays = self.get_relays()
        return relays[0].url if relays else None

    async def start(self) -> None:
        """Begin browsing."""
        self._aiozc = AsyncZeroconf()
        self._browser = AsyncServiceBrowser(
            self._aiozc.zeroconf,
            [_fqdn(self.service_type)],
            handlers=[self._on_state_change],
        )
        logger.info(f"Browsing for {self.service_type} relays")

    async def stop(self) -> None:
        """Stop browsing and drop in-flight lookups."""
        if self._browser is not None:
            await self._browser.async_cancel()
            self._browser = None
        for task in list(self._pending):
            task.cancel()
        if self._aiozc is not None:
            await self._aiozc.async_close()
            self._aiozc = None


async def discover_relay_url(
    service_type: str = "_possync._tcp",
    timeout: float = 5,
    cache_ttl_seconds: int = 300,
) -> str | None:
    """Browse briefly and return a relay URL, or None if none answers."""
    browser = RelayBrowser(service_type=service_type, cache_ttl_seconds=cache_ttl_seconds)
    await browser.start()
    try:
        return await browser.wait_for_relay(timeout)
    finally:
        await browser.stop()
