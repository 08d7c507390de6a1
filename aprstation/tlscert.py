"""Load or generate the station's self-signed TLS certificate.

The first call creates an ECDSA P-256 certificate and key under
``<dir>/cert.pem`` and ``<dir>/key.pem`` (key mode 0600), with subject
alternative names for localhost, 127.0.0.1, ::1 and the host name. Later
calls load the existing files.
"""

from __future__ import annotations

import hashlib
import ipaddress
import os
import secrets
import socket
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

CERT_NAME = "cert.pem"
KEY_NAME = "key.pem"
# Self-signed certificates have no revocation infrastructure, so a long
# expiry is preferred over a fragile renewal loop.
VALID_FOR = timedelta(days=10 * 365)


@dataclass(frozen=True)
class CertificatePair:
    """A certificate and key on disk plus the certificate's fingerprint."""

    cert_path: str
    key_path: str
    certificate: x509.Certificate
    fingerprint: str


def fingerprint(der: bytes) -> str:
    """SHA-256 of a DER certificate as lowercase hex without separators."""
    return hashlib.sha256(der).hexdigest()


def _paths(directory: str | os.PathLike[str]) -> tuple[str, str]:
    directory = os.fspath(directory)
    return os.path.join(directory, CERT_NAME), os.path.join(directory, KEY_NAME)


def load_or_generate(directory: str | os.PathLike[str]) -> CertificatePair:
    """Load the pair under ``directory``, generating one if none exists."""
    os.makedirs(directory, mode=0o700, exist_ok=True)
    cert_path, key_path = _paths(directory)
    if not os.path.exists(cert_path):
        return _generate(directory)
    with open(cert_path, "rb") as fh:
        cert_pem = fh.read()
    with open(key_path, "rb") as fh:
        key_pem = fh.read()
    return _pair_from_pem(cert_path, key_path, cert_pem, key_pem)


def regenerate(directory: str | os.PathLike[str]) -> CertificatePair:
    """Remove any existing pair under ``directory`` and create a fresh one."""
    for path in _paths(directory):
        try:
            os.remove(path)
        except OSError:
            pass
    return _generate(directory)


def _pair_from_pem(
    cert_path: str, key_path: str, cert_pem: bytes, key_pem: bytes
) -> CertificatePair:
    try:
        certificate = x509.load_pem_x509_certificate(cert_pem)
        key = serialization.load_pem_private_key(key_pem, password=None)
    except ValueError as exc:
        raise ValueError(f"load tls keypair: {exc}") from exc
    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    der_format = serialization.Encoding.DER
    if key.public_key().public_bytes(der_format, spki) != certificate.public_key().public_bytes(
        der_format, spki
    ):
        raise ValueError("load tls keypair: private key does not match certificate")
    return CertificatePair(
        cert_path=cert_path,
        key_path=key_path,
        certificate=certificate,
        fingerprint=fingerprint(certificate.public_bytes(der_format)),
    )


def _generate(directory: str | os.PathLike[str]) -> CertificatePair:
    key = ec.generate_private_key(ec.SECP256R1())
    serial = secrets.randbelow((1 << 127) - 1) + 1

    hostname = socket.gethostname()
    dns_names = ["localhost"]
    if hostname and hostname != "localhost":
        dns_names.append(hostname)
    alt_names: list[x509.GeneralName] = [x509.DNSName(n) for n in dns_names]
    alt_names += [
        x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
        x509.IPAddress(ipaddress.ip_address("::1")),
    ]

    name = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "aprstation self-signed"),
            x509.NameAttribute(NameOID.COMMON_NAME, "aprstation"),
        ]
    )
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(serial)
        .not_valid_before(now - timedelta(hours=1))
        .not_valid_after(now + VALID_FOR)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False
        )
        .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
        .sign(key, hashes.SHA256())
    )

    cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    cert_path, key_path = _paths(directory)
    _write_atomic(cert_path, cert_pem, 0o644)
    _write_atomic(key_path, key_pem, 0o600)
    return _pair_from_pem(cert_path, key_path, cert_pem, key_pem)


def _write_atomic(path: str, data: bytes, mode: int) -> None:
    """Write via temp file, fsync and rename so a crash never leaves a
    half-written file behind."""
    tmp = path + ".tmp"
    fd = os.open(tmp, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, mode)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
    except BaseException:
        try:
            os.remove(tmp)
        except OSError:
            pass
        raise
    os.replace(tmp, path)
    try:
        dir_fd = os.open(os.path.dirname(path) or ".", os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)