# server/mtls_server.py
from __future__ import annotations

import argparse
import io
import logging
import socketserver
import sys
from typing import Optional
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer

from OpenSSL import SSL

from mtls_demo.config import ServerConfig, TLSSettings, configure_logging
from mtls_demo.errors import CredentialLoadError, HandshakeError
from mtls_demo.pki.credentials import CredentialBundle, CredentialPaths, load_credentials
from mtls_demo.server.flask_mtls_app import SESSION_ENVIRON_KEY, create_app
from mtls_demo.server.session import SessionDescriptor, inspect_session, log_session
from mtls_demo.server.tls import TLSStream, create_ssl_context

logger = logging.getLogger(__name__)


class Handler(WSGIRequestHandler):
    """
    Completes the TLS handshake, inspects the session, then serves WSGI.

    ``self.connection`` is always a pyOpenSSL ``Connection`` that finished
    its handshake; the application only ever sees its ``SessionDescriptor``.
    """

    server: "MTLSServer"
    connection: SSL.Connection
    session: SessionDescriptor

    def setup(self):
        self.connection = self.request
        peer = "%s:%s" % self.client_address[:2]
        try:
            self.connection.do_handshake()
        except SSL.Error as exc:
            raise HandshakeError(f"TLS handshake with {peer} failed: {exc}") from exc

        self.session = inspect_session(self.connection)
        log_session(self.session, peer)

        stream = TLSStream(self.connection)
        self.rfile = io.BufferedReader(stream)
        self.wfile = stream

    def get_environ(self):
        env = super().get_environ()
        env["HTTPS"] = "on"
        env[SESSION_ENVIRON_KEY] = self.session
        return env

    def log_message(self, format, *args):
        logger.info("%s - %s", self.address_string(), format % args)


class MTLSServer(socketserver.ThreadingMixIn, WSGIServer):
    """WSGI server whose accepted sockets are wrapped in server-side TLS connections."""

    daemon_threads = True

    def __init__(
        self,
        server_address,
        credentials: CredentialBundle,
        settings: Optional[TLSSettings] = None,
        app=None,
    ):
        self.settings = settings or TLSSettings()
        self.ssl_context = create_ssl_context(credentials, self.settings)
        super().__init__(server_address, Handler)
        self.set_app(app or create_app(reject_unauthorized=self.settings.reject_unauthorized))

    def get_request(self):
        sock, addr = self.socket.accept()
        conn = SSL.Connection(self.ssl_context, sock)
        conn.set_accept_state()
        return conn, addr

    def shutdown_request(self, request):
        try:
            request.shutdown()
        except SSL.Error as exc:
            logger.debug("TLS shutdown did not complete: %s", exc)
        self.close_request(request)

    def handle_error(self, request, client_address):
        exc = sys.exc_info()[1]
        if isinstance(exc, HandshakeError):
            logger.error("TLS Client Error: %s", exc)
        elif isinstance(exc, (SSL.Error, OSError)):
            logger.warning("Connection from %s:%s dropped: %s", *client_address[:2], exc)
        else:
            logger.exception("Unhandled error while serving %s:%s", *client_address[:2])

    @property
    def port(self) -> int:
        return self.server_address[1]


def listen(
    bind_address: tuple[str, int],
    credentials: CredentialBundle,
    settings: Optional[TLSSettings] = None,
) -> MTLSServer:
    """Bind the mTLS listener; call ``serve_forever()`` on the result to start serving."""
    return MTLSServer(bind_address, credentials, settings)


def main(argv=None):
    config = ServerConfig.from_env()
    parser = argparse.ArgumentParser(description="HTTPS server requiring client certificates")
    parser.add_argument("--host", default=config.host)
    parser.add_argument("--port", type=int, default=config.port)
    args = parser.parse_args(argv)

    configure_logging()
    try:
        credentials = load_credentials(CredentialPaths.for_server(config.certs_dir))
    except CredentialLoadError as exc:
        logger.critical("Failed to start server: %s", exc)
        sys.exit(1)

    httpd = listen((args.host, args.port), credentials, config.tls)
    logger.info("HTTPS server running at https://localhost:%d", httpd.port)
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        httpd.server_close()


if __name__ == "__main__":
    main()
