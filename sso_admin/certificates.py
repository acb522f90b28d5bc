"""
Certificate handling for SSO admin connections and LDAP identity sources.

Provides the pluggable server-certificate validation strategies used when
opening a session, and PEM parsing helpers for the certificate lists
attached to external identity sources.
"""

import ssl
import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from ldap3 import Tls

from sso_admin.errors import ConnectivityError, ValidationError

logger = logging.getLogger(__name__)

PEM_BEGIN = '-----BEGIN CERTIFICATE-----'
PEM_END = '-----END CERTIFICATE-----'


class CertificateValidator(ABC):
    """Strategy deciding how the server's TLS certificate is checked."""

    @abstractmethod
    def create_tls(self) -> Tls:
        """Build the ldap3 TLS configuration for this strategy."""


class ChainCertificateValidator(CertificateValidator):
    """
    Default strategy: the server certificate chain must validate.

    Args:
        ca_cert_file: Optional CA bundle used instead of the system store
    """

    def __init__(self, ca_cert_file: Optional[str] = None):
        self.ca_cert_file = ca_cert_file

    def create_tls(self) -> Tls:
        tls_config = {'validate': ssl.CERT_REQUIRED}
        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")
        try:
            return Tls(**tls_config)
        except Exception as e:
            raise ConnectivityError(f"Failed to create TLS configuration: {e}") from e


class AcceptAllCertificateValidator(CertificateValidator):
    """Accepts any server certificate. Only for explicitly insecure connections."""

    def create_tls(self) -> Tls:
        logger.warning("Server certificate verification disabled")
        return Tls(validate=ssl.CERT_NONE)


def normalize_pem(pem: str) -> str:
    """Strip outer whitespace and normalize line endings."""
    data = (pem or '').strip()
    return data.replace('\r\n', '\n').replace('\r', '\n')


def load_certificate(pem: str) -> x509.Certificate:
    """
    Parse a single PEM certificate.

    Raises:
        ValidationError: If the text is not a valid PEM certificate
    """
    data = normalize_pem(pem)
    if PEM_BEGIN not in data or PEM_END not in data:
        raise ValidationError("Certificate must be a PEM block (BEGIN/END CERTIFICATE)")
    try:
        return x509.load_pem_x509_certificate(data.encode('ascii'))
    except (ValueError, UnicodeEncodeError) as e:
        raise ValidationError(f"Invalid PEM certificate: {e}") from e


def load_certificates(pems: Iterable[str]) -> List[x509.Certificate]:
    return [load_certificate(pem) for pem in pems]


def pem_to_der(pem: str) -> bytes:
    return load_certificate(pem).public_bytes(serialization.Encoding.DER)


def der_to_pem(der: bytes) -> str:
    """Convert DER bytes (as stored in the directory) back to PEM text."""
    try:
        certificate = x509.load_der_x509_certificate(der)
    except ValueError as e:
        raise ValidationError(f"Invalid DER certificate: {e}") from e
    return certificate.public_bytes(serialization.Encoding.PEM).decode('ascii').strip()


def thumbprint(pem: str) -> str:
    """SHA-1 thumbprint in colon-separated upper-case hex."""
    digest = load_certificate(pem).fingerprint(hashes.SHA1())
    return ':'.join(f"{b:02X}" for b in digest)
