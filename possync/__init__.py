"""Outbox-based change synchronization between POS terminals and a relay."""

__version__ = "0.1.0"
