# server/tls.py
from __future__ import annotations

import io
import logging
import ssl

from OpenSSL import SSL, crypto

from mtls_demo.config import TLSSettings
from mtls_demo.pki.credentials import CredentialBundle
from mtls_demo.server.session import record_verify_failure

logger = logging.getLogger(__name__)

_MIN_PROTO_VERSIONS = {
    ssl.TLSVersion.TLSv1_2: SSL.TLS1_2_VERSION,
    ssl.TLSVersion.TLSv1_3: SSL.TLS1_3_VERSION,
}


def create_ssl_context(credentials: CredentialBundle, settings: TLSSettings) -> SSL.Context:
    """
    Server context that requests a client certificate but leaves the verdict to us.

    The standard library ``ssl`` module aborts the handshake on a bad client
    certificate; pyOpenSSL lets the verify callback keep the connection open
    so the HTTP layer can answer 401. The first error OpenSSL reports while
    validating the peer chain is kept as the connection's app data and later
    becomes the session's authorization verdict.
    """
    ctx = SSL.Context(SSL.TLS_SERVER_METHOD)
    try:
        ctx.set_min_proto_version(_MIN_PROTO_VERSIONS[settings.minimum_version])
    except KeyError:
        raise ValueError(f"Unsupported minimum TLS version: {settings.minimum_version!r}") from None
    if settings.ciphers:
        ctx.set_cipher_list(settings.ciphers.encode("ascii"))
    # no session resumption: every connection gets a full handshake and a fresh verdict
    ctx.set_session_cache_mode(SSL.SESS_CACHE_OFF)
    ctx.set_options(SSL.OP_NO_TICKET)
    ctx.set_session_id(b"mtls-demo")

    leaf, *intermediates = credentials.load_certificates()
    ctx.use_certificate(leaf)
    for cert in intermediates:
        ctx.add_extra_chain_cert(cert)
    ctx.use_privatekey(credentials.load_private_key())
    ctx.check_privatekey()

    store = ctx.get_cert_store()
    for anchor in credentials.load_trust_anchors():
        # X509Store.add_cert only takes pyOpenSSL certificates
        store.add_cert(crypto.X509.from_cryptography(anchor))
        ctx.add_client_ca(anchor)

    def verify(conn, cert, errno, depth, ok):
        if not ok:
            record_verify_failure(conn, errno, depth)
        return settings.verify_callback(conn, cert, errno, depth, ok)

    ctx.set_verify(SSL.VERIFY_PEER if settings.require_client_cert else SSL.VERIFY_NONE, verify)
    return ctx


class TLSStream(io.RawIOBase):
    """File-like view of a pyOpenSSL connection, for ``BaseHTTPRequestHandler``."""

    def __init__(self, conn: SSL.Connection):
        super().__init__()
        self._conn = conn

    def readable(self) -> bool:
        return True

    def writable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        try:
            return self._conn.recv_into(b)
        except SSL.ZeroReturnError:
            return 0
        except SSL.SysCallError as exc:
            # (-1, 'Unexpected EOF'): peer closed without close_notify
            if exc.args and exc.args[0] == -1:
                return 0
            raise

    def write(self, b) -> int:
        self._conn.sendall(bytes(b))
        return len(b)

    def fileno(self) -> int:
        return self._conn.fileno()
