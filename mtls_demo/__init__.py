"""Mutual-TLS handshake demo: one client, one server, pre-provisioned certificates."""

__version__ = "0.1.0"
