# server/session.py
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from OpenSSL import SSL

from mtls_demo.pki.credentials import common_name

logger = logging.getLogger(__name__)

NO_PEER_CERTIFICATE = "peer did not return a certificate"

_codes = SSL.X509VerificationCodes

# OpenSSL's X509_verify_cert_error_string() wording
VERIFY_ERROR_MESSAGES = {
    _codes.ERR_UNABLE_TO_GET_ISSUER_CERT: "unable to get issuer certificate",
    _codes.ERR_CERT_SIGNATURE_FAILURE: "certificate signature failure",
    _codes.ERR_CERT_NOT_YET_VALID: "certificate is not yet valid",
    _codes.ERR_CERT_HAS_EXPIRED: "certificate has expired",
    _codes.ERR_DEPTH_ZERO_SELF_SIGNED_CERT: "self-signed certificate",
    _codes.ERR_SELF_SIGNED_CERT_IN_CHAIN: "self-signed certificate in certificate chain",
    _codes.ERR_UNABLE_TO_GET_ISSUER_CERT_LOCALLY: "unable to get local issuer certificate",
    _codes.ERR_UNABLE_TO_VERIFY_LEAF_SIGNATURE: "unable to verify the first certificate",
    _codes.ERR_CERT_REVOKED: "certificate revoked",
    _codes.ERR_INVALID_CA: "invalid CA certificate",
    _codes.ERR_PATH_LENGTH_EXCEEDED: "path length constraint exceeded",
    _codes.ERR_INVALID_PURPOSE: "unsupported certificate purpose",
    _codes.ERR_CERT_UNTRUSTED: "certificate not trusted",
    _codes.ERR_CERT_REJECTED: "certificate rejected",
}


def verify_error_message(errno: int) -> str:
    return VERIFY_ERROR_MESSAGES.get(errno, f"certificate verify error {errno}")


class AuthorizationState(enum.Enum):
    UNAUTHORIZED = "unauthorized"
    AUTHORIZED = "authorized"


@dataclass(frozen=True)
class VerifyFailure:
    """First chain validation error OpenSSL reported during a handshake."""

    errno: int
    depth: int

    @property
    def message(self) -> str:
        return verify_error_message(self.errno)


def record_verify_failure(conn: SSL.Connection, errno: int, depth: int) -> None:
    """Keep the first failure on the connection; later ones follow from it."""
    if conn.get_app_data() is None:
        conn.set_app_data(VerifyFailure(errno, depth))


def authorization_verdict(
    peer_presented: bool, failure: Optional[VerifyFailure]
) -> tuple[bool, Optional[str]]:
    """
    Turn what the handshake observed into ``(authorized, error)``.

    ``failure`` is whatever the verify callback recorded; ``None`` means
    OpenSSL validated the peer chain against the server's trust anchors
    without complaint.
    """
    if not peer_presented:
        return False, NO_PEER_CERTIFICATE
    if failure is not None:
        return False, failure.message
    return True, None


@dataclass(frozen=True)
class SessionDescriptor:
    """What the server learned about one connection once the handshake finished."""

    protocol: str
    cipher: str
    authorized: bool
    authorization_error: Optional[str] = None
    subject_cn: Optional[str] = None
    issuer_cn: Optional[str] = None

    @property
    def state(self) -> AuthorizationState:
        return AuthorizationState.AUTHORIZED if self.authorized else AuthorizationState.UNAUTHORIZED


def inspect_session(conn: SSL.Connection) -> SessionDescriptor:
    """Build the descriptor for a connection whose handshake has completed."""
    leaf = conn.get_peer_certificate(as_cryptography=True)
    authorized, error = authorization_verdict(leaf is not None, conn.get_app_data())
    return SessionDescriptor(
        protocol=conn.get_protocol_version_name(),
        cipher=conn.get_cipher_name() or "",
        authorized=authorized,
        authorization_error=error,
        subject_cn=common_name(leaf.subject) if leaf is not None else None,
        issuer_cn=common_name(leaf.issuer) if leaf is not None else None,
    )


def log_session(session: SessionDescriptor, peer: str = "") -> None:
    logger.info("TLS Connection Details%s:", f" ({peer})" if peer else "")
    logger.info("- Authorized: %s", session.authorized)
    logger.info("- Protocol: %s", session.protocol)
    logger.info("- Cipher: %s", session.cipher)
    logger.info("- Client Subject: %s", session.subject_cn or "Unknown")
    logger.info("- Client Issuer: %s", session.issuer_cn or "Unknown")
