"""Multicast DNS responder, record cache and DNS-SD service announcement."""

__version__ = "0.1.0"