# pki/make_certs.py
from __future__ import annotations

import argparse
import datetime as dt
import ipaddress
import logging
from dataclasses import dataclass
from pathlib import Path

from cryptography import x509
from cryptography.x509.oid import NameOID, ExtendedKeyUsageOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from mtls_demo.config import DEFAULT_CERTS_DIR, configure_logging

logger = logging.getLogger(__name__)

CA_KEY_SIZE = 4096
LEAF_KEY_SIZE = 2048

# --- Helpers ---

def _write_pem(path: Path, data: bytes) -> None:
    path.write_bytes(data)
    logger.info("wrote %s", path)

def gen_rsa_key(key_size: int = LEAF_KEY_SIZE) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)

def pem_key(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )

def pem_cert(*certs: x509.Certificate) -> bytes:
    return b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certs)

def name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])

def _ca_key_usage() -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=True,
        key_encipherment=False,
        content_commitment=False,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=True,
        crl_sign=True,
        encipher_only=False,
        decipher_only=False,
    )

def build_ca(
    common_name: str,
    days_valid: int = 3650,
    *,
    path_length: int = 1,
    key_size: int = CA_KEY_SIZE,
) -> tuple[rsa.RSAPrivateKey, x509.Certificate]:
    key = gen_rsa_key(key_size)
    now = dt.datetime.now(dt.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name(common_name))
        .issuer_name(name(common_name))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - dt.timedelta(minutes=1))
        .not_valid_after(now + dt.timedelta(days=days_valid))
        .add_extension(x509.BasicConstraints(ca=True, path_length=path_length), critical=True)
        .add_extension(_ca_key_usage(), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(private_key=key, algorithm=hashes.SHA256())
    )
    return key, cert

def build_intermediate_ca(
    parent_key: rsa.RSAPrivateKey,
    parent_cert: x509.Certificate,
    common_name: str,
    days_valid: int = 1825,
    *,
    key_size: int = CA_KEY_SIZE,
) -> tuple[rsa.RSAPrivateKey, x509.Certificate]:
    key = gen_rsa_key(key_size)
    now = dt.datetime.now(dt.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name(common_name))
        .issuer_name(parent_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - dt.timedelta(minutes=1))
        .not_valid_after(now + dt.timedelta(days=days_valid))
        # no further CAs below the intermediate
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .add_extension(_ca_key_usage(), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(parent_key.public_key()),
            critical=False,
        )
        .sign(private_key=parent_key, algorithm=hashes.SHA256())
    )
    return key, cert

def sign_leaf_cert(
    ca_key: rsa.RSAPrivateKey,
    ca_cert: x509.Certificate,
    common_name: str,
    *,
    is_server: bool,
    san_dns: list[str] | None = None,
    san_ips: list[str] | None = None,
    not_before: dt.datetime | None = None,
    not_after: dt.datetime | None = None,
    key_size: int = LEAF_KEY_SIZE,
) -> tuple[rsa.RSAPrivateKey, x509.Certificate]:
    key = gen_rsa_key(key_size)
    now = dt.datetime.now(dt.timezone.utc)
    nb = not_before or (now - dt.timedelta(minutes=1))
    na = not_after or (now + dt.timedelta(days=730))

    builder = (
        x509.CertificateBuilder()
        .subject_name(name(common_name))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(nb)
        .not_valid_after(na)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=True,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
    )

    if is_server:
        eku = x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH])
    else:
        eku = x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH])

    builder = builder.add_extension(eku, critical=False)

    sans: list[x509.GeneralName] = [x509.DNSName(d) for d in san_dns or []]
    sans += [x509.IPAddress(ipaddress.ip_address(ip)) for ip in san_ips or []]
    if sans:
        builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)

    cert = builder.sign(private_key=ca_key, algorithm=hashes.SHA256())
    return key, cert


@dataclass(frozen=True)
class GeneratedPKI:
    out_dir: Path
    root_cert: x509.Certificate
    intermediate_cert: x509.Certificate
    server_cert: x509.Certificate
    client_cert: x509.Certificate
    foreign_client_cert: x509.Certificate


def generate(
    out_dir: Path = DEFAULT_CERTS_DIR,
    *,
    ca_key_size: int = CA_KEY_SIZE,
    leaf_key_size: int = LEAF_KEY_SIZE,
) -> GeneratedPKI:
    """
    Write a root CA, an intermediate CA and the server/client leaves under ``out_dir``.

    File names are the ones the server and client load by default. The
    client certificate file carries the intermediate after the leaf so
    the chain can be built against the server's root-only trust anchor.
    A ``foreign-client`` pair signed by an unrelated CA is written as well;
    presenting it makes the server answer 401.
    """
    out_dir.mkdir(parents=True, exist_ok=True)

    # --- Root CA (leaves sit under the intermediate) ---
    root_key, root_cert = build_ca("MyRootCA", path_length=1, key_size=ca_key_size)
    _write_pem(out_dir / "rootCA.key", pem_key(root_key))
    _write_pem(out_dir / "rootCA.crt", pem_cert(root_cert))

    # --- Intermediate CA signed by root ---
    int_key, int_cert = build_intermediate_ca(
        root_key, root_cert, "MyIntermediateCA", key_size=ca_key_size
    )
    _write_pem(out_dir / "intermediateCA.key", pem_key(int_key))
    _write_pem(out_dir / "intermediateCA.crt", pem_cert(int_cert))

    # --- Server cert signed by intermediate ---
    srv_key, srv_cert = sign_leaf_cert(
        int_key, int_cert,
        "localhost",
        is_server=True,
        san_dns=["localhost"],
        san_ips=["127.0.0.1"],
        key_size=leaf_key_size,
    )
    _write_pem(out_dir / "server.key", pem_key(srv_key))
    _write_pem(out_dir / "server.crt", pem_cert(srv_cert))
    _write_pem(out_dir / "server-chain.crt", pem_cert(srv_cert, int_cert))

    # --- Client cert signed by intermediate ---
    cl_key, cl_cert = sign_leaf_cert(
        int_key, int_cert,
        "client",
        is_server=False,
        key_size=leaf_key_size,
    )
    _write_pem(out_dir / "client.key", pem_key(cl_key))
    _write_pem(out_dir / "client.crt", pem_cert(cl_cert, int_cert))

    # --- Trust anchors for the client: root + intermediate ---
    _write_pem(out_dir / "ca-chain.crt", pem_cert(root_cert, int_cert))

    # --- Foreign CA + client signed by foreign CA (unknown CA scenario) ---
    fca_key, fca_cert = build_ca("Foreign Root CA", path_length=0, key_size=leaf_key_size)
    fcl_key, fcl_cert = sign_leaf_cert(
        fca_key, fca_cert,
        "foreign-client",
        is_server=False,
        key_size=leaf_key_size,
    )
    _write_pem(out_dir / "foreign-client.key", pem_key(fcl_key))
    _write_pem(out_dir / "foreign-client.crt", pem_cert(fcl_cert))

    return GeneratedPKI(
        out_dir=out_dir,
        root_cert=root_cert,
        intermediate_cert=int_cert,
        server_cert=srv_cert,
        client_cert=cl_cert,
        foreign_client_cert=fcl_cert,
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate the demo PKI for the mTLS client and server")
    parser.add_argument("--out", type=Path, default=DEFAULT_CERTS_DIR, help="output directory (default: %(default)s)")
    args = parser.parse_args()

    configure_logging()
    generate(args.out)
    logger.info("Certificate generation complete, files are in %s", args.out.resolve())

if __name__ == "__main__":
    main()
