from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)

# Peruvian RUCs start with 10 (persona natural) or 20 (persona juridica)
_RUC_IN_SUBJECT = re.compile(r"(?<!\d)(?:10|20)\d{9}(?!\d)")


@dataclass(frozen=True)
class SigningMaterial:
    key_pem: bytes
    cert_pem: bytes


@dataclass(frozen=True)
class CertificateInfo:
    subject: str
    issuer: str
    serial: int
    not_before: datetime
    not_after: datetime
    rsa: bool
    ruc: str | None

    @property
    def valid(self) -> bool:
        return self.not_before <= datetime.now(UTC) <= self.not_after


def _read_pfx(pfx_path: str, password: str) -> tuple[PrivateKeyTypes | None, x509.Certificate]:
    data = Path(pfx_path).read_bytes()
    key, cert, _ = pkcs12.load_key_and_certificates(data, password.encode())
    if cert is None:
        raise ValueError("El archivo .pfx no contiene certificado")
    return key, cert


def load_pfx(pfx_path: str, password: str) -> SigningMaterial:
    """Read the .pfx/.p12 and return the key and certificate as PEM.

    Read fresh on every call; nothing is cached.
    """
    key, cert = _read_pfx(pfx_path, password)
    if key is None:
        raise ValueError("El archivo .pfx no contiene clave privada")
    return SigningMaterial(
        key_pem=key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()),
        cert_pem=cert.public_bytes(Encoding.PEM),
    )


def _subject_ruc(cert: x509.Certificate) -> str | None:
    match = _RUC_IN_SUBJECT.search(cert.subject.rfc4514_string())
    return match.group(0) if match else None


def validate_certificate(pfx_path: str, password: str) -> CertificateInfo:
    """Describe the certificate SUNAT will see: validity window, key type and RUC."""
    key, cert = _read_pfx(pfx_path, password)
    return CertificateInfo(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        serial=cert.serial_number,
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        rsa=isinstance(key, rsa.RSAPrivateKey),
        ruc=_subject_ruc(cert),
    )
