"""
Client certificate helpers.
"""

import hashlib

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding

from shared.errors import CertificateParseError


def load_certificate(certificate_pem: str) -> x509.Certificate:
    try:
        return x509.load_pem_x509_certificate(certificate_pem.strip().encode("utf-8"))
    except ValueError as exc:
        raise CertificateParseError() from exc


def certificate_serial(certificate: x509.Certificate) -> str:
    """Serial number as a decimal string."""
    return str(certificate.serial_number)


def certificate_fingerprint(certificate: x509.Certificate) -> str:
    """SHA-256 over the canonical PEM encoding, so whitespace in the submitted text does not matter."""
    return hashlib.sha256(certificate.public_bytes(Encoding.PEM)).hexdigest()
