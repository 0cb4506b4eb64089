from datetime import timezone
from pathlib import Path
from typing import Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from autoprov.src.core.errors import AssetWriteError, ConfigurationError
from autoprov.src.core.models import Certificate, CertificateClass

DEVELOPMENT_NAME_MARKERS = ("Development", "Developer:")


def serial_hex(certificate: x509.Certificate) -> str:
    return format(certificate.serial_number, "X")


def _name_attribute(name: x509.Name, oid) -> str:
    values = name.get_attributes_for_oid(oid)
    return values[0].value if values else ""


def certificate_class_for_name(common_name: str) -> CertificateClass:
    """Apple Development / iPhone Developer names mark development certificates"""
    if any(marker in common_name for marker in DEVELOPMENT_NAME_MARKERS):
        return CertificateClass.DEVELOPMENT
    return CertificateClass.DISTRIBUTION


def certificate_from_x509(
    certificate: x509.Certificate,
    private_key=None,
    certificate_class: Optional[CertificateClass] = None,
    remote_id: Optional[str] = None,
) -> Certificate:
    subject = certificate.subject
    common_name = _name_attribute(subject, NameOID.COMMON_NAME)
    expiry = certificate.not_valid_after_utc.astimezone(timezone.utc)
    return Certificate(
        serial=serial_hex(certificate),
        common_name=common_name,
        team_id=_name_attribute(subject, NameOID.ORGANIZATIONAL_UNIT_NAME),
        team_name=_name_attribute(subject, NameOID.ORGANIZATION_NAME),
        certificate_class=certificate_class or certificate_class_for_name(common_name),
        expiry=expiry,
        has_private_key=private_key is not None,
        id=remote_id,
        content=certificate.public_bytes(serialization.Encoding.DER),
        private_key=private_key,
    )


def certificate_from_der(der: bytes, remote_id: Optional[str] = None) -> Certificate:
    return certificate_from_x509(x509.load_der_x509_certificate(der), remote_id=remote_id)


def load_p12(
    path: Path, password: str, certificate_class: Optional[CertificateClass] = None
) -> Certificate:
    """Read a PKCS#12 bundle holding a signing certificate and its key"""
    try:
        key, certificate, _ = pkcs12.load_key_and_certificates(
            Path(path).read_bytes(), password.encode() if password else None
        )
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Failed to load certificate {path}: {e}")
    if certificate is None:
        raise ConfigurationError(f"No certificate found in {path}")
    return certificate_from_x509(certificate, private_key=key, certificate_class=certificate_class)


def export_p12(certificate: Certificate, password: str) -> bytes:
    """Bundle a certificate with its private key for keychain import"""
    if certificate.private_key is None or certificate.content is None:
        raise AssetWriteError(
            f"Certificate {certificate.common_name} has no private key to export"
        )
    cert = x509.load_der_x509_certificate(certificate.content)
    return pkcs12.serialize_key_and_certificates(
        name=certificate.common_name.encode(),
        key=certificate.private_key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password.encode()),
    )


def generate_signing_request(common_name: str) -> Tuple[rsa.RSAPrivateKey, str]:
    """New RSA key and the PEM encoded CSR to submit for a certificate"""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .sign(key, hashes.SHA256())
    )
    return key, csr.public_bytes(serialization.Encoding.PEM).decode()
