from __future__ import annotations

from pathlib import Path


class MTLSError(Exception):
    """Base class for every error raised by the demo."""


class CredentialLoadError(MTLSError):
    """A key, certificate or trust-anchor file is missing, unreadable or not PEM."""

    def __init__(self, path: Path | str, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Cannot load {self.path}: {reason}")


class HandshakeError(MTLSError):
    """TLS negotiation failed before any HTTP exchange happened."""


class AuthorizationError(MTLSError):
    """The handshake completed but the peer certificate failed chain validation."""


class ExchangeTimeout(MTLSError, TimeoutError):
    """No response arrived within the client's timeout."""


class InvariantViolation(MTLSError):
    """A non-TLS request reached a handler that only serves secure sessions."""
