"""
Explicit TLS and process settings for the mTLS client and server.

Everything OpenSSL would otherwise pick implicitly (minimum protocol
version, cipher list, whether the peer must present a certificate) is
spelled out in ``TLSSettings`` and passed to both session establishers.
"""
from __future__ import annotations

import logging
import os
import ssl
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_CERTS_DIR = Path("certs")
DEFAULT_PORT = 3000
DEFAULT_URL = f"https://localhost:{DEFAULT_PORT}"
DEFAULT_TIMEOUT = 10.0

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# (connection, x509, errno, depth, preverify_ok) -> accept?
VerifyCallback = Callable[[object, object, int, int, int], bool]


def defer_to_application(conn, cert, errno: int, depth: int, ok: int) -> bool:
    """
    TLS-level verification callback that never aborts the handshake.

    OpenSSL still runs its chain validation and reports each error here;
    the server keeps the first one as the session verdict and the HTTP
    layer enforces it, so a bad certificate turns into a 401 instead of a
    reset.
    """
    if not ok:
        logger.debug(
            "Peer certificate %s failed verification at depth %d (error %d)",
            cert.to_cryptography().subject.rfc4514_string() if cert is not None else None,
            depth,
            errno,
        )
    return True


_TLS_VERSIONS = {
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
}


def parse_tls_version(value: str) -> ssl.TLSVersion:
    try:
        return _TLS_VERSIONS[value]
    except KeyError:
        raise ValueError(
            f"Unsupported minimum TLS version {value!r}, expected one of {', '.join(_TLS_VERSIONS)}"
        ) from None


@dataclass(frozen=True)
class TLSSettings:
    minimum_version: ssl.TLSVersion = ssl.TLSVersion.TLSv1_2
    # OpenSSL cipher string for TLS 1.2 and below; None keeps the library default
    ciphers: Optional[str] = None
    require_client_cert: bool = True
    reject_unauthorized: bool = True
    verify_callback: VerifyCallback = defer_to_application

    @classmethod
    def from_env(cls) -> "TLSSettings":
        kwargs = {}
        if os.environ.get("MTLS_MIN_TLS_VERSION"):
            kwargs["minimum_version"] = parse_tls_version(os.environ["MTLS_MIN_TLS_VERSION"])
        if os.environ.get("MTLS_CIPHERS"):
            kwargs["ciphers"] = os.environ["MTLS_CIPHERS"]
        return cls(**kwargs)


def certs_dir_from_env() -> Path:
    return Path(os.environ.get("MTLS_CERTS_DIR", str(DEFAULT_CERTS_DIR)))


@dataclass(frozen=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    certs_dir: Path = DEFAULT_CERTS_DIR
    tls: TLSSettings = field(default_factory=TLSSettings)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        return cls(
            host=os.environ.get("MTLS_HOST", cls.host),
            port=int(os.environ.get("MTLS_PORT", cls.port)),
            certs_dir=certs_dir_from_env(),
            tls=TLSSettings.from_env(),
        )


@dataclass(frozen=True)
class ClientConfig:
    url: str = DEFAULT_URL
    timeout: float = DEFAULT_TIMEOUT
    certs_dir: Path = DEFAULT_CERTS_DIR
    tls: TLSSettings = field(default_factory=TLSSettings)

    @classmethod
    def from_env(cls) -> "ClientConfig":
        return cls(
            url=os.environ.get("MTLS_URL", cls.url),
            timeout=float(os.environ.get("MTLS_TIMEOUT", cls.timeout)),
            certs_dir=certs_dir_from_env(),
            tls=TLSSettings.from_env(),
        )


def configure_logging(level: Optional[str] = None) -> None:
    level = (level or os.environ.get("MTLS_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)
