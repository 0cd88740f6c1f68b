"""mDNS/Zeroconf discovery of the sync relay."""

from .mdns import RelayAnnouncer, RelayBrowser, RelayEndpoint, discover_relay_url

__all__ = ["RelayAnnouncer", "RelayBrowser", "RelayEndpoint", "discover_relay_url"]
