# pki/credentials.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.x509.oid import NameOID

from mtls_demo.config import DEFAULT_CERTS_DIR
from mtls_demo.errors import CredentialLoadError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialPaths:
    key: Path
    certificate: Path
    trust_anchor: Path

    @classmethod
    def for_server(cls, certs_dir: Path = DEFAULT_CERTS_DIR) -> "CredentialPaths":
        return cls(
            key=certs_dir / "server.key",
            certificate=certs_dir / "server-chain.crt",
            trust_anchor=certs_dir / "rootCA.crt",
        )

    @classmethod
    def for_client(cls, certs_dir: Path = DEFAULT_CERTS_DIR) -> "CredentialPaths":
        return cls(
            key=certs_dir / "client.key",
            certificate=certs_dir / "client.crt",
            trust_anchor=certs_dir / "ca-chain.crt",
        )


@dataclass(frozen=True)
class CredentialBundle:
    """Key, certificate (leaf or leaf + chain) and trust anchors, as read from disk."""

    private_key: bytes
    certificate: bytes
    trust_anchor: bytes
    paths: CredentialPaths

    def load_private_key(self) -> PrivateKeyTypes:
        return serialization.load_pem_private_key(self.private_key, password=None)

    def load_certificates(self) -> List[x509.Certificate]:
        """Leaf first, then whatever intermediates follow it in the file."""
        return x509.load_pem_x509_certificates(self.certificate)

    def load_trust_anchors(self) -> List[x509.Certificate]:
        return x509.load_pem_x509_certificates(self.trust_anchor)

    def describe(self) -> str:
        leaf = self.load_certificates()[0]
        return (
            f"CN={common_name(leaf.subject) or 'Unknown'} "
            f"issued by CN={common_name(leaf.issuer) or 'Unknown'}, "
            f"valid until {leaf.not_valid_after_utc.isoformat()}"
        )


def common_name(name: x509.Name) -> Optional[str]:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attrs:
        return None
    return attrs[0].value


def _read(path: Path) -> bytes:
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        raise CredentialLoadError(path, "file not found") from None
    except OSError as exc:
        raise CredentialLoadError(path, exc.strerror or str(exc)) from exc
    if not data.strip():
        raise CredentialLoadError(path, "file is empty")
    return data


def load_credentials(paths: CredentialPaths) -> CredentialBundle:
    """
    Read the three PEM files named by ``paths``.

    Each file is also parsed once so that a truncated or wrong-kind file
    fails here, at startup, rather than in the middle of a handshake.

    Raises:
        CredentialLoadError: naming the first file that could not be used
    """
    bundle = CredentialBundle(
        private_key=_read(paths.key),
        certificate=_read(paths.certificate),
        trust_anchor=_read(paths.trust_anchor),
        paths=paths,
    )

    try:
        bundle.load_private_key()
    except (ValueError, TypeError) as exc:
        raise CredentialLoadError(paths.key, f"not an unencrypted PEM private key ({exc})") from exc

    for path, loader in (
        (paths.certificate, bundle.load_certificates),
        (paths.trust_anchor, bundle.load_trust_anchors),
    ):
        try:
            loader()
        except ValueError as exc:
            raise CredentialLoadError(path, f"no PEM certificate found ({exc})") from exc

    logger.debug("Loaded credentials: %s", bundle.describe())
    return bundle
