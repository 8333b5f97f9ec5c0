from __future__ import annotations

import argparse
import errno
import logging
import socket
import ssl
import sys
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import requests
from requests.adapters import HTTPAdapter

from mtls_demo.config import ClientConfig, TLSSettings, configure_logging
from mtls_demo.errors import CredentialLoadError, ExchangeTimeout, HandshakeError, MTLSError
from mtls_demo.pki.credentials import CredentialBundle, CredentialPaths, load_credentials

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Received:
    """The server answered; any status, 401 included."""

    status: int
    body: str


@dataclass(frozen=True)
class NoResponse:
    """The request went out but nothing came back (refused, reset, handshake failure, timeout)."""

    error: MTLSError
    code: Optional[str] = None
    cause: Optional[str] = None


@dataclass(frozen=True)
class RequestNotSent:
    """The request could not be built or sent (bad URL, name resolution)."""

    error: Exception
    cause: Optional[str] = None


ExchangeOutcome = Union[Received, NoResponse, RequestNotSent]


def create_ssl_context(settings: TLSSettings) -> ssl.SSLContext:
    # PROTOCOL_TLS_CLIENT loads no system roots: the only anchors are the ones
    # requests hands over from our CA bundle. Hostname checking stays on.
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.minimum_version = settings.minimum_version
    if settings.ciphers:
        ctx.set_ciphers(settings.ciphers)
    ctx.verify_mode = ssl.CERT_REQUIRED
    return ctx


class TLSSettingsAdapter(HTTPAdapter):
    """Transport adapter that applies ``TLSSettings`` to every HTTPS connection."""

    def __init__(self, settings: TLSSettings, **kwargs):
        self.settings = settings
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        pool_kwargs["ssl_context"] = create_ssl_context(self.settings)
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)


def _next_cause(exc: BaseException) -> Optional[BaseException]:
    # urllib3's MaxRetryError keeps the real failure in .reason
    reason = getattr(exc, "reason", None)
    if isinstance(reason, BaseException):
        return reason
    if exc.__cause__ is not None:
        return exc.__cause__
    # requests wraps the urllib3 error as its first argument
    for arg in exc.args:
        if isinstance(arg, BaseException):
            return arg
    return exc.__context__


def _causes(exc: BaseException):
    """Follow nested errors from the outermost one down to the root cause."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = _next_cause(current)


def _innermost_cause(exc: BaseException) -> Optional[str]:
    chain = list(_causes(exc))
    if len(chain) < 2:
        return None
    inner = chain[-1]
    return f"{type(inner).__name__}: {inner}"


def _error_code(exc: BaseException) -> Optional[str]:
    for err in _causes(exc):
        if isinstance(err, ssl.SSLError) and err.reason:
            return err.reason
        if isinstance(err, OSError) and err.errno in errno.errorcode:
            return errno.errorcode[err.errno]
    return None


def _name_resolution_failed(exc: BaseException) -> bool:
    return any(isinstance(err, socket.gaierror) for err in _causes(exc))


def _exchange(url: str, paths: CredentialPaths, timeout: float, settings: TLSSettings) -> Received:
    with requests.Session() as session:
        # direct connection only; no proxies or netrc from the environment
        session.trust_env = False
        session.mount("https://", TLSSettingsAdapter(settings))
        response = session.get(
            url,
            cert=(str(paths.certificate), str(paths.key)),
            verify=str(paths.trust_anchor),
            timeout=timeout,
            allow_redirects=False,
        )
        return Received(status=response.status_code, body=response.text)


def _run_with_deadline(fn, timeout: float, *args):
    """
    Call ``fn`` on a daemon thread and wait at most ``timeout`` seconds for it.

    requests applies its timeout to each connect and read separately, so a
    peer that keeps trickling bytes never trips it. The worker is left to
    finish on its own when the deadline passes; its socket operations are
    still bounded by the per-operation timeout.
    """
    future: Future = Future()

    def work():
        try:
            future.set_result(fn(*args))
        except BaseException as exc:
            future.set_exception(exc)

    threading.Thread(target=work, name="mtls-fetch", daemon=True).start()
    return future.result(timeout=timeout)


def fetch(
    url: str,
    credentials: CredentialBundle,
    timeout: float = ClientConfig.timeout,
    settings: Optional[TLSSettings] = None,
) -> ExchangeOutcome:
    """
    Issue exactly one GET over a mutually authenticated TLS session.

    The client certificate and key are presented from the bundle's files
    and the server is verified against the bundle's trust anchors only.
    ``timeout`` bounds the whole exchange, from connect to the last body
    byte. Never raises for network or TLS failures; they come back as
    ``NoResponse`` or ``RequestNotSent``.
    """
    try:
        return _run_with_deadline(_exchange, timeout, url, credentials.paths, timeout, settings or TLSSettings())
    except FutureTimeout:
        logger.debug("Abandoning exchange with %s after %ss", url, timeout)
        return NoResponse(ExchangeTimeout(f"No response from {url} within {timeout}s"))
    except requests.exceptions.Timeout as exc:
        return NoResponse(
            ExchangeTimeout(f"No response from {url} within {timeout}s"),
            code=_error_code(exc),
            cause=_innermost_cause(exc),
        )
    except requests.exceptions.SSLError as exc:
        return NoResponse(
            HandshakeError(f"TLS handshake with {url} failed"),
            code=_error_code(exc),
            cause=_innermost_cause(exc),
        )
    except requests.exceptions.ConnectionError as exc:
        if _name_resolution_failed(exc):
            return RequestNotSent(exc, cause=_innermost_cause(exc))
        if any(isinstance(err, TimeoutError) for err in _causes(exc)):
            error: MTLSError = ExchangeTimeout(f"No response from {url} within {timeout}s")
        else:
            error = MTLSError(f"No response received from {url}")
        return NoResponse(error, code=_error_code(exc), cause=_innermost_cause(exc))
    except requests.exceptions.RequestException as exc:
        return RequestNotSent(exc, cause=_innermost_cause(exc))


def report(outcome: ExchangeOutcome, out=None) -> None:
    out = out or sys.stdout
    if isinstance(outcome, Received):
        if outcome.status < 400:
            print("Server response status:", outcome.status, file=out)
            print("Server response data:", outcome.body, file=out)
        else:
            print("Request failed:", file=out)
            print(f"Status: {outcome.status}", file=out)
            print(f"Response: {outcome.body}", file=out)
        return

    print("Request failed:", file=out)
    if isinstance(outcome, NoResponse):
        print("No response received from server", file=out)
        print(f"Error: {outcome.error}", file=out)
        if outcome.code:
            print(f"Error code: {outcome.code}", file=out)
    else:
        print(f"Error: {outcome.error}", file=out)
    if outcome.cause:
        print(f"Error cause: {outcome.cause}", file=out)


def main(argv=None):
    config = ClientConfig.from_env()
    defaults = CredentialPaths.for_client(config.certs_dir)

    parser = argparse.ArgumentParser(description="Single GET over mutual TLS")
    parser.add_argument("--url", default=config.url)
    parser.add_argument("--cert", type=Path, default=defaults.certificate, help="client certificate (leaf or chain)")
    parser.add_argument("--key", type=Path, default=defaults.key)
    parser.add_argument("--ca", type=Path, default=defaults.trust_anchor, help="CA bundle used to verify the server")
    parser.add_argument("--timeout", type=float, default=config.timeout)
    args = parser.parse_args(argv)

    configure_logging()
    try:
        credentials = load_credentials(CredentialPaths(key=args.key, certificate=args.cert, trust_anchor=args.ca))
    except CredentialLoadError as exc:
        logger.critical("Failed to read certificate files: %s", exc)
        sys.exit(1)

    logger.info("Starting mTLS client request as %s", credentials.describe())
    outcome = fetch(args.url, credentials, timeout=args.timeout, settings=config.tls)
    report(outcome)
    return outcome


if __name__ == "__main__":
    main()
